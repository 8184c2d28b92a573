import pytest
from sqlalchemy import select

from fleet_arena.models import ModelResponse, Ranking, RankingStatus, Turn
from fleet_arena.schemas import (
    RankingEntry,
    RankingSubmitRequest,
    SessionCreateRequest,
    TurnCreateRequest,
)
from fleet_arena.services.sessions import SessionService


async def _turn_with_responses(session, service, model_ids, finalized):
    arena_session = await service.create_session(session, SessionCreateRequest(model_ids=model_ids))
    turn = await service.create_turn(session, TurnCreateRequest(session_id=arena_session.id, prompt="  Compare  "))
    responses = []
    for model_id in model_ids:
        done = model_id in finalized
        responses.append(
            ModelResponse(
                turn_id=turn.id,
                model_id=model_id,
                content=f"{model_id} says hi" if done else "",
                finish_reason="stop" if done else None,
            )
        )
    session.add_all(responses)
    await session.commit()
    return arena_session, turn, {response.model_id: response.id for response in responses}


def _ranking(arena_session, turn, ranked: list) -> RankingSubmitRequest:
    return RankingSubmitRequest(
        session_id=arena_session.id,
        turn_id=turn.id,
        rankings=[RankingEntry(response_id=response_id, rank=rank) for response_id, rank in ranked],
    )


@pytest.mark.asyncio
async def test_turns_are_numbered_and_gated_on_ranking(session):
    service = SessionService()
    arena_session = await service.create_session(session, SessionCreateRequest(model_ids=["a", "b"]))

    first = await service.create_turn(session, TurnCreateRequest(session_id=arena_session.id, prompt="  hello "))
    with pytest.raises(ValueError, match="pending"):
        await service.create_turn(session, TurnCreateRequest(session_id=arena_session.id, prompt="again"))
    await service.skip_ranking(session, first.id)
    with pytest.raises(ValueError, match="Expected turn number 2"):
        await service.create_turn(session, TurnCreateRequest(session_id=arena_session.id, prompt="x", turn_number=5))
    second = await service.create_turn(session, TurnCreateRequest(session_id=arena_session.id, prompt="again"))

    assert first.turn_number == 1
    assert first.prompt == "hello"
    assert second.turn_number == 2


@pytest.mark.asyncio
async def test_ranking_must_be_permutation_over_eligible_responses(session):
    service = SessionService()
    arena_session, turn, ids = await _turn_with_responses(session, service, ["a", "b", "c"], finalized={"a", "c"})

    with pytest.raises(ValueError, match="cover all 2"):
        await service.submit_rankings(session, _ranking(arena_session, turn, [(ids["a"], 1)]))
    with pytest.raises(ValueError, match="not eligible"):
        await service.submit_rankings(session, _ranking(arena_session, turn, [(ids["a"], 1), (ids["b"], 2)]))
    with pytest.raises(ValueError, match="permutation"):
        await service.submit_rankings(session, _ranking(arena_session, turn, [(ids["a"], 1), (ids["c"], 3)]))
    with pytest.raises(ValueError, match="only once"):
        await service.submit_rankings(session, _ranking(arena_session, turn, [(ids["a"], 1), (ids["a"], 2)]))

    revealed = await service.submit_rankings(session, _ranking(arena_session, turn, [(ids["c"], 1), (ids["a"], 2)]))

    result = await session.exec(select(Ranking).where(Ranking.turn_id == turn.id))
    ranks = sorted(ranking.rank for ranking in result.scalars().all())
    refreshed = await session.get(Turn, turn.id)
    await session.refresh(refreshed)
    assert ranks == [1, 2]
    assert refreshed.ranking_status == RankingStatus.SUBMITTED.value
    assert {item.model_id: item.slot_label for item in revealed} == {"a": "A", "b": "B", "c": "C"}


@pytest.mark.asyncio
async def test_ranking_cannot_be_submitted_twice(session):
    service = SessionService()
    arena_session, turn, ids = await _turn_with_responses(session, service, ["a", "b"], finalized={"a", "b"})
    payload = _ranking(arena_session, turn, [(ids["a"], 2), (ids["b"], 1)])

    await service.submit_rankings(session, payload)
    with pytest.raises(ValueError, match="already"):
        await service.submit_rankings(session, payload)


@pytest.mark.asyncio
async def test_history_reveals_identities_only_after_submission(session):
    service = SessionService()
    arena_session, turn, ids = await _turn_with_responses(session, service, ["a", "b"], finalized={"a", "b"})

    hidden = await service.load_session(session, arena_session.id)
    await service.submit_rankings(session, _ranking(arena_session, turn, [(ids["a"], 1), (ids["b"], 2)]))
    revealed = await service.load_session(session, arena_session.id)

    assert [response.model_id for response in hidden.turns[0].responses] == [None, None]
    assert [response.slot_label for response in hidden.turns[0].responses] == ["A", "B"]
    assert hidden.model_ids is None
    assert [(response.model_id, response.rank) for response in revealed.turns[0].responses] == [("a", 1), ("b", 2)]


@pytest.mark.asyncio
async def test_complete_session_is_idempotent(session):
    service = SessionService()
    arena_session = await service.create_session(session, SessionCreateRequest(model_ids=["a", "b"]))

    assert await service.complete_session(session, arena_session.id) is True
    assert await service.complete_session(session, arena_session.id) is False
    with pytest.raises(ValueError, match="complete"):
        await service.create_turn(session, TurnCreateRequest(session_id=arena_session.id, prompt="late"))
