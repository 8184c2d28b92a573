import asyncio
import json
from collections import Counter, defaultdict

import pytest
from sqlalchemy import select

from fleet_arena.models import ModelResponse
from fleet_arena.services.fanout import FanoutCoordinator, encode_sse

from fakes import FakeUpstream, failed, finished

MESSAGES = [{"role": "user", "content": "Explain backpressure"}]


async def _run(coordinator: FanoutCoordinator, session_id, turn_id, model_ids) -> list[dict]:
    return [
        event
        async for event in coordinator.run(
            session_id=session_id,
            turn_id=turn_id,
            model_ids=model_ids,
            messages=MESSAGES,
        )
    ]


async def _rows(session_factory, turn_id) -> dict[str, ModelResponse]:
    async with session_factory() as session:
        result = await session.exec(select(ModelResponse).where(ModelResponse.turn_id == turn_id))
        return {row.model_id: row for row in result.scalars().all()}


def test_encode_sse_frames_one_data_line():
    assert encode_sse({"type": "delta", "slotLabel": "A", "delta": "hi"}) == (
        'data: {"type": "delta", "slotLabel": "A", "delta": "hi"}\n\n'
    )


@pytest.mark.asyncio
async def test_one_terminal_event_per_model_and_single_complete(session_factory, make_turn):
    model_ids = ["openai/gpt-4o", "anthropic/claude-3.5-sonnet", "meta/llama-3-70b", "mistral/large"]
    session_id, turn_id = await make_turn(model_ids)
    upstream = FakeUpstream(
        {
            "openai/gpt-4o": finished("Back", "pressure ", "slows producers."),
            "anthropic/claude-3.5-sonnet": failed("400 unknown model"),
            "meta/llama-3-70b": finished("Flow control.", finish_reason="length"),
            "mistral/large": [RuntimeError("socket closed")],
        }
    )

    events = await _run(FanoutCoordinator(upstream, session_factory), session_id, turn_id, model_ids)

    terminals = Counter(event["slotLabel"] for event in events if event["type"] in ("done", "error"))
    assert terminals == {"A": 1, "B": 1, "C": 1, "D": 1}
    assert [event["type"] for event in events].count("complete") == 1
    assert events[-1]["type"] == "complete"
    assert set(events[-1]["responseIds"]) == set(model_ids)
    assert events[-1]["responseIds"]["anthropic/claude-3.5-sonnet"] == ""
    assert events[-1]["responseIds"]["mistral/large"] == ""

    by_slot = {event["slotLabel"]: event for event in events if event["type"] in ("done", "error")}
    assert by_slot["C"]["finishReason"] == "length"
    assert by_slot["D"]["error"] == "socket closed"


@pytest.mark.asyncio
async def test_persisted_content_equals_concatenated_deltas(session_factory, make_turn):
    model_ids = ["model-a", "model-b"]
    session_id, turn_id = await make_turn(model_ids)
    upstream = FakeUpstream(
        {
            "model-a": finished("one ", "two ", "three"),
            "model-b": finished("solo"),
        }
    )

    events = await _run(FanoutCoordinator(upstream, session_factory), session_id, turn_id, model_ids)

    deltas: dict[str, list[str]] = defaultdict(list)
    for event in events:
        if event["type"] == "delta":
            deltas[event["slotLabel"]].append(event["delta"])
    rows = await _rows(session_factory, turn_id)

    assert rows["model-a"].content == "".join(deltas["A"]) == "one two three"
    assert rows["model-b"].content == "".join(deltas["B"]) == "solo"
    assert rows["model-a"].token_count == 3
    assert rows["model-a"].latency_ms == 42
    done_ids = {event["slotLabel"]: event["responseId"] for event in events if event["type"] == "done"}
    assert done_ids["A"] == str(rows["model-a"].id)
    assert events[-1]["responseIds"] == {"model-a": str(rows["model-a"].id), "model-b": str(rows["model-b"].id)}


@pytest.mark.asyncio
async def test_timed_out_model_leaves_row_unfinalized(session_factory, make_turn):
    model_ids = ["model-a", "model-b", "model-c"]
    session_id, turn_id = await make_turn(model_ids)
    upstream = FakeUpstream(
        {
            "model-a": finished("alpha"),
            "model-b": [*finished("never")[:1], *failed("Model timed out, no response within 90 s", timed_out=True)],
            "model-c": finished("gamma"),
        }
    )

    events = await _run(FanoutCoordinator(upstream, session_factory), session_id, turn_id, model_ids)

    done = [event["slotLabel"] for event in events if event["type"] == "done"]
    errors = [event for event in events if event["type"] == "error"]
    assert sorted(done) == ["A", "C"]
    assert len(errors) == 1
    assert errors[0]["slotLabel"] == "B"
    assert "timed out" in errors[0]["error"]
    assert events[-1]["responseIds"]["model-b"] == ""

    rows = await _rows(session_factory, turn_id)
    assert len(rows) == 3
    assert sum(1 for row in rows.values() if row.is_finalized) == 2
    assert rows["model-b"].finish_reason is None
    assert rows["model-b"].content == ""


@pytest.mark.asyncio
async def test_consumer_disconnect_does_not_cancel_model_tasks(session_factory, make_turn):
    model_ids = ["fast", "slow"]
    session_id, turn_id = await make_turn(model_ids)
    release = asyncio.Event()

    async def slow_events():
        await release.wait()
        return finished("worth the wait")

    upstream = FakeUpstream({"fast": finished("quick"), "slow": slow_events})
    coordinator = FanoutCoordinator(upstream, session_factory)

    stream = coordinator.run(session_id=session_id, turn_id=turn_id, model_ids=model_ids, messages=MESSAGES)
    first = await anext(stream)
    assert first["type"] == "delta"
    await stream.aclose()

    release.set()
    await coordinator.drain()

    rows = await _rows(session_factory, turn_id)
    assert rows["slow"].content == "worth the wait"
    assert rows["slow"].finish_reason == "stop"


@pytest.mark.asyncio
async def test_duplicate_or_out_of_range_models_are_rejected(session_factory, make_turn):
    session_id, turn_id = await make_turn(["a", "b"])
    coordinator = FanoutCoordinator(FakeUpstream({}), session_factory)

    with pytest.raises(ValueError):
        await _run(coordinator, session_id, turn_id, ["a", "a"])
    with pytest.raises(ValueError):
        await _run(coordinator, session_id, turn_id, ["a"])
    with pytest.raises(ValueError):
        await _run(coordinator, session_id, turn_id, [f"m{index}" for index in range(9)])


@pytest.mark.asyncio
async def test_sse_frames_are_valid_json(session_factory, make_turn):
    model_ids = ["model-a", "model-b"]
    session_id, turn_id = await make_turn(model_ids)
    upstream = FakeUpstream({"model-a": finished("x"), "model-b": finished("y")})

    events = await _run(FanoutCoordinator(upstream, session_factory), session_id, turn_id, model_ids)

    for event in events:
        frame = encode_sse(event)
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):]) == event
