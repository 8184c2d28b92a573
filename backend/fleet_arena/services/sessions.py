"""Session, turn and ranking operations around the streaming core.

Classes:
    SessionService: Creates sessions and turns, validates rankings, and reveals identities.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlmodel.ext.asyncio.session import AsyncSession

from fleet_arena.models import (
    ComparisonSession,
    ModelResponse,
    Ranking,
    RankingStatus,
    Turn,
    slot_label,
)
from fleet_arena.schemas import (
    RankingSubmitRequest,
    ResponseResource,
    RevealedResponse,
    SessionCreateRequest,
    SessionResource,
    TurnCreateRequest,
    TurnResource,
)

_LOGGER = logging.getLogger(__name__)


class SessionService:
    async def create_session(self, session: AsyncSession, payload: SessionCreateRequest) -> ComparisonSession:
        arena_session = ComparisonSession(model_ids=list(payload.model_ids), user_id=payload.user_id)
        session.add(arena_session)
        await session.commit()
        await session.refresh(arena_session)
        return arena_session

    async def create_turn(self, session: AsyncSession, payload: TurnCreateRequest) -> Turn:
        arena_session = await session.get(ComparisonSession, payload.session_id, populate_existing=True)
        if arena_session is None:
            raise ValueError("Session not found")
        if arena_session.is_complete:
            raise ValueError("Session is already complete")

        result = await session.exec(
            select(Turn)
            .where(Turn.session_id == payload.session_id)
            .order_by(Turn.turn_number.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        previous = result.scalars().first()
        if previous is not None and previous.ranking_status == RankingStatus.PENDING.value:
            raise ValueError(f"Ranking for turn {previous.turn_number} is still pending")

        next_number = (previous.turn_number if previous else 0) + 1
        if payload.turn_number is not None and payload.turn_number != next_number:
            raise ValueError(f"Expected turn number {next_number}, got {payload.turn_number}")

        turn = Turn(session_id=payload.session_id, turn_number=next_number, prompt=payload.prompt)
        session.add(turn)
        await session.commit()
        await session.refresh(turn)
        return turn

    async def submit_rankings(
        self,
        session: AsyncSession,
        payload: RankingSubmitRequest,
    ) -> list[RevealedResponse]:
        turn, arena_session = await self._load_turn(session, payload.turn_id)
        if turn.session_id != payload.session_id:
            raise ValueError("Turn not found in session")
        if turn.ranking_status != RankingStatus.PENDING.value:
            raise ValueError(f"Turn ranking was already {turn.ranking_status}")

        responses = await self._turn_responses(session, turn.id)
        eligible = {response.id for response in responses if response.is_finalized}
        submitted_ids = [entry.response_id for entry in payload.rankings]
        ranks = sorted(entry.rank for entry in payload.rankings)

        if len(set(submitted_ids)) != len(submitted_ids):
            raise ValueError("Each response may be ranked only once")
        unknown = set(submitted_ids) - eligible
        if unknown:
            raise ValueError("Rankings reference responses that are not eligible for ranking")
        if len(submitted_ids) != len(eligible):
            raise ValueError(f"Ranking must cover all {len(eligible)} eligible responses")
        if ranks != list(range(1, len(eligible) + 1)):
            raise ValueError(f"Ranks must be a permutation of 1..{len(eligible)}")

        claimed = await session.execute(
            update(Turn)
            .where(Turn.id == turn.id)
            .where(Turn.ranking_status == RankingStatus.PENDING.value)
            .values(ranking_status=RankingStatus.SUBMITTED.value)
        )
        if not claimed.rowcount:
            await session.rollback()
            raise ValueError("Turn ranking was already submitted")
        session.add_all(
            [
                Ranking(
                    session_id=turn.session_id,
                    turn_id=turn.id,
                    response_id=entry.response_id,
                    rank=entry.rank,
                )
                for entry in payload.rankings
            ]
        )
        await session.commit()
        _LOGGER.info("[rankings:%s] submitted count=%d", turn.id, len(payload.rankings))

        return [
            RevealedResponse(
                id=response.id,
                model_id=response.model_id,
                slot_label=slot_label(arena_session.model_ids, response.model_id),
            )
            for response in responses
        ]

    async def skip_ranking(self, session: AsyncSession, turn_id: UUID) -> Turn:
        turn, _ = await self._load_turn(session, turn_id)
        if turn.ranking_status != RankingStatus.PENDING.value:
            raise ValueError(f"Turn ranking was already {turn.ranking_status}")
        turn.ranking_status = RankingStatus.SKIPPED.value
        session.add(turn)
        await session.commit()
        _LOGGER.info("[rankings:%s] skipped", turn.id)
        await session.refresh(turn)
        return turn

    async def complete_session(self, session: AsyncSession, session_id: UUID) -> bool:
        """Flip the completion flag; returns False when the session was already complete."""

        if await session.get(ComparisonSession, session_id) is None:
            raise ValueError("Session not found")
        result = await session.execute(
            update(ComparisonSession)
            .where(ComparisonSession.id == session_id)
            .where(ComparisonSession.is_complete.is_(False))  # type: ignore[attr-defined]
            .values(is_complete=True, completed_at=datetime.utcnow())
        )
        await session.commit()
        return bool(result.rowcount)

    async def load_session(self, session: AsyncSession, session_id: UUID) -> SessionResource:
        arena_session = await session.get(ComparisonSession, session_id, populate_existing=True)
        if arena_session is None:
            raise ValueError("Session not found")

        turns_result = await session.exec(
            select(Turn)
            .where(Turn.session_id == session_id)
            .order_by(Turn.turn_number)
            .execution_options(populate_existing=True)
        )
        turns = turns_result.scalars().all()
        turn_ids = [turn.id for turn in turns]
        responses: list[ModelResponse] = []
        ranks: dict[UUID, int] = {}
        if turn_ids:
            responses_result = await session.exec(
                select(ModelResponse).where(ModelResponse.turn_id.in_(turn_ids))
            )
            responses = list(responses_result.scalars().all())
            rankings_result = await session.exec(select(Ranking).where(Ranking.turn_id.in_(turn_ids)))
            ranks = {ranking.response_id: ranking.rank for ranking in rankings_result.scalars().all()}

        model_ids = arena_session.model_ids
        turn_resources: list[TurnResource] = []
        for turn in turns:
            revealed = turn.ranking_status == RankingStatus.SUBMITTED.value
            turn_responses = sorted(
                (response for response in responses if response.turn_id == turn.id),
                key=lambda response: slot_label(model_ids, response.model_id),
            )
            turn_resources.append(
                TurnResource(
                    id=turn.id,
                    turn_number=turn.turn_number,
                    prompt=turn.prompt,
                    ranking_status=turn.ranking_status,
                    responses=[
                        ResponseResource(
                            id=response.id,
                            slot_label=slot_label(model_ids, response.model_id),
                            content=response.content,
                            model_id=response.model_id if revealed else None,
                            token_count=response.token_count,
                            latency_ms=response.latency_ms,
                            finish_reason=response.finish_reason,
                            rank=ranks.get(response.id),
                        )
                        for response in turn_responses
                    ],
                )
            )

        return SessionResource(
            id=arena_session.id,
            model_ids=list(model_ids) if arena_session.is_complete else None,
            is_complete=arena_session.is_complete,
            created_at=arena_session.created_at,
            completed_at=arena_session.completed_at,
            turns=turn_resources,
        )

    async def _load_turn(self, session: AsyncSession, turn_id: UUID) -> tuple[Turn, ComparisonSession]:
        turn = await session.get(Turn, turn_id, populate_existing=True)
        if turn is None:
            raise ValueError("Turn not found")
        arena_session = await session.get(ComparisonSession, turn.session_id)
        if arena_session is None:
            raise ValueError("Session not found")
        return turn, arena_session

    async def _turn_responses(self, session: AsyncSession, turn_id: UUID) -> list[ModelResponse]:
        result = await session.exec(select(ModelResponse).where(ModelResponse.turn_id == turn_id))
        return list(result.scalars().all())
