"""Ranking endpoints: submit a full ranking for a turn and reveal identities, or skip."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from fleet_arena.api.deps import get_session_service, service_error
from fleet_arena.db.session import get_session
from fleet_arena.schemas import RankingSkipRequest, RankingSubmitRequest, RankingSubmitResponse
from fleet_arena.services import SessionService

router = APIRouter(prefix="/api/rankings", tags=["rankings"])


@router.post("", response_model=RankingSubmitResponse)
async def submit_rankings(
    payload: RankingSubmitRequest,
    session: AsyncSession = Depends(get_session),
    service: SessionService = Depends(get_session_service),
) -> RankingSubmitResponse:
    try:
        revealed = await service.submit_rankings(session, payload)
    except ValueError as exc:
        raise service_error(exc) from exc
    return RankingSubmitResponse(revealed=revealed)


@router.post("/skip")
async def skip_ranking(
    payload: RankingSkipRequest,
    session: AsyncSession = Depends(get_session),
    service: SessionService = Depends(get_session_service),
) -> dict:
    try:
        turn = await service.skip_ranking(session, payload.turn_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    return {"ok": True, "rankingStatus": turn.ranking_status}
