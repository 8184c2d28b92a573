import json
from uuid import uuid4

import pytest
from sqlalchemy import update

from fleet_arena.api.deps import get_rate_limiter
from fleet_arena.core.config import Settings
from fleet_arena.main import app
from fleet_arena.models import ModelResponse
from fleet_arena.services import InMemoryRateLimiter
from fleet_arena.services.judge import ANALYZE_FUNCTION_ID, SESSION_COMPLETED_EVENT, JudgePipeline

from fakes import FakeJudgeClient, failed, finished

MODELS = ["openai/gpt-4o", "anthropic/claude-3.5-sonnet", "meta/llama-3-70b"]


def _frames(body: str) -> list[dict]:
    frames = [frame for frame in body.split("\n\n") if frame.strip()]
    assert all(frame.startswith("data: ") for frame in frames)
    return [json.loads(frame[len("data: "):]) for frame in frames]


async def _open_turn(client, model_ids=MODELS, prompt="What is backpressure?") -> tuple[str, str]:
    created = await client.post("/api/sessions", json={"modelIds": model_ids})
    assert created.status_code == 201
    session_id = created.json()["sessionId"]
    turn = await client.post("/api/sessions/turns", json={"sessionId": session_id, "prompt": prompt})
    assert turn.status_code == 201
    return session_id, turn.json()["turnId"]


def _stream_body(session_id, turn_id, model_ids=MODELS, prompt="What is backpressure?") -> dict:
    return {
        "sessionId": session_id,
        "turnId": turn_id,
        "modelIds": model_ids,
        "messages": [{"role": "user", "content": prompt}],
    }


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_full_turn_stream_rank_and_reveal(client, fake_upstream):
    fake_upstream.script.update(
        {
            MODELS[0]: finished("Producers ", "slow down."),
            MODELS[1]: failed("Model timed out, no response within 90 s", timed_out=True),
            MODELS[2]: finished("Queues fill up."),
        }
    )
    session_id, turn_id = await _open_turn(client)

    response = await client.post("/api/stream", json=_stream_body(session_id, turn_id))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = _frames(response.text)
    complete = events[-1]
    assert complete["type"] == "complete"
    assert complete["responseIds"][MODELS[1]] == ""
    assert [event["slotLabel"] for event in events if event["type"] == "error"] == ["B"]

    blocked = await client.post("/api/sessions/turns", json={"sessionId": session_id, "prompt": "next"})
    assert blocked.status_code == 409

    partial = await client.post(
        "/api/rankings",
        json={
            "sessionId": session_id,
            "turnId": turn_id,
            "rankings": [{"responseId": complete["responseIds"][MODELS[0]], "rank": 1}],
        },
    )
    assert partial.status_code == 400

    ranked = await client.post(
        "/api/rankings",
        json={
            "sessionId": session_id,
            "turnId": turn_id,
            "rankings": [
                {"responseId": complete["responseIds"][MODELS[2]], "rank": 1},
                {"responseId": complete["responseIds"][MODELS[0]], "rank": 2},
            ],
        },
    )
    assert ranked.status_code == 200
    revealed = {item["slotLabel"]: item["modelId"] for item in ranked.json()["revealed"]}
    assert revealed == {"A": MODELS[0], "B": MODELS[1], "C": MODELS[2]}

    detail = await client.get(f"/api/sessions/{session_id}")
    assert detail.status_code == 200
    responses = detail.json()["turns"][0]["responses"]
    assert [(item["slotLabel"], item["rank"]) for item in responses] == [("A", 2), ("B", None), ("C", 1)]
    assert responses[0]["content"] == "Producers slow down."


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "mutate",
    [
        lambda body: body.pop("sessionId"),
        lambda body: body.update(messages=[]),
        lambda body: body.update(modelIds=["only-one"]),
        lambda body: body.update(modelIds=["dup", "dup"]),
        lambda body: body.update(modelIds=[f"m{index}" for index in range(9)]),
    ],
)
async def test_stream_rejects_bad_requests(client, fake_upstream, mutate):
    body = _stream_body(str(uuid4()), str(uuid4()))
    mutate(body)

    response = await client.post("/api/stream", json=body)

    assert response.status_code == 400
    assert fake_upstream.calls == []


@pytest.mark.asyncio
async def test_stream_rejects_non_json_body(client):
    response = await client.post("/api/stream", content=b"not json", headers={"content-type": "application/json"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_stream_is_rate_limited_by_first_forwarded_hop(client):
    limiter = InMemoryRateLimiter(limit=1, window_seconds=60)
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    first = await client.post("/api/stream", json={}, headers={"x-forwarded-for": "198.51.100.7, 10.0.0.1"})
    other = await client.post("/api/stream", json={}, headers={"x-forwarded-for": "198.51.100.8"})
    limited = await client.post("/api/stream", json={}, headers={"x-forwarded-for": "198.51.100.7"})

    assert first.status_code == 400
    assert other.status_code == 400
    assert limited.status_code == 429
    assert limited.headers["retry-after"] == "60"


@pytest.mark.asyncio
async def test_complete_schedules_analysis_and_exposes_flags(client, fake_upstream, runtime, session_factory):
    flag = {
        "model_id": MODELS[0],
        "turn_id": None,
        "flag_type": "verbosity",
        "severity": "medium",
        "description": "Much longer than the other answers and ranked last.",
        "evidence": {"detail": "3x average tokens", "turn": 1},
        "confidence": 0.7,
    }
    runtime.register(
        SESSION_COMPLETED_EVENT,
        JudgePipeline(session_factory, FakeJudgeClient(flags=[flag]), settings=Settings()),
        function_id=ANALYZE_FUNCTION_ID,
        concurrency_key=lambda event: event.data["session_id"],
    )
    fake_upstream.script.update({model_id: finished(f"hi from {model_id}") for model_id in MODELS})
    session_id, turn_id = await _open_turn(client)
    await client.post("/api/stream", json=_stream_body(session_id, turn_id))
    await client.post("/api/rankings/skip", json={"turnId": turn_id})

    completed = await client.post("/api/sessions/complete", json={"sessionId": session_id})
    again = await client.post("/api/sessions/complete", json={"sessionId": session_id})
    await runtime.drain()

    assert completed.json() == {"ok": True, "alreadyComplete": False, "analysisScheduled": True}
    assert again.json()["alreadyComplete"] is True
    assert again.json()["analysisScheduled"] is False

    status = await client.get(f"/api/internal/analysis/{session_id}")
    assert status.json()["state"] == "done"
    assert status.json()["output"] == {"flags_written": 1}

    behaviors = await client.get("/api/internal/behaviors")
    assert [item["modelId"] for item in behaviors.json()] == [MODELS[0]]
    assert behaviors.json()[0]["sessionId"] == session_id

    detail = await client.get(f"/api/sessions/{session_id}")
    assert detail.json()["modelIds"] == MODELS
    assert detail.json()["turns"][0]["rankingStatus"] == "skipped"


@pytest.mark.asyncio
async def test_unknown_ids_return_404(client):
    missing = str(uuid4())

    assert (await client.get(f"/api/sessions/{missing}")).status_code == 404
    assert (await client.post("/api/analyze", json={"sessionId": missing})).status_code == 404
    assert (await client.post("/api/rankings/skip", json={"turnId": missing})).status_code == 404
    assert (await client.get(f"/api/internal/analysis/{missing}")).status_code == 404
    turn = await client.post("/api/sessions/turns", json={"sessionId": missing, "prompt": "hello"})
    assert turn.status_code == 404


@pytest.mark.asyncio
async def test_session_creation_validates_models(client):
    single = await client.post("/api/sessions", json={"modelIds": ["solo"]})
    duplicate = await client.post("/api/sessions", json={"modelIds": ["a", "a"]})

    assert single.status_code == 400
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"][0]["loc"] == ["body", "modelIds"]


@pytest.mark.asyncio
async def test_stats_report_totals_refusals_and_win_rates(client, session_factory, seed_ranked_session):
    empty = (await client.get("/api/internal/stats")).json()
    await seed_ranked_session()
    refused = await seed_ranked_session()
    await seed_ranked_session(("anthropic/claude-3.5-sonnet", "openai/gpt-4o"))
    async with session_factory() as session:
        await session.execute(
            update(ModelResponse)
            .where(ModelResponse.id == refused["response_ids"][1])
            .values(finish_reason="content_filter")
        )
        await session.commit()

    stats = (await client.get("/api/internal/stats")).json()

    assert empty == {"totalSessions": 0, "totalPrompts": 0, "refusalRate": 0.0, "winRates": []}
    assert stats["totalSessions"] == 3
    assert stats["totalPrompts"] == 3
    assert stats["refusalRate"] == 16.7
    assert stats["winRates"] == [
        {"modelId": "openai/gpt-4o", "wins": 2, "pct": 67},
        {"modelId": "anthropic/claude-3.5-sonnet", "wins": 1, "pct": 33},
    ]
