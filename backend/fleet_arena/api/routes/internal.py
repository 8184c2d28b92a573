"""Internal analysis endpoints.

Endpoints:
    list_behaviors(limit, session): Most recent behavioral flags written by the judge.
    trigger_analysis(payload, ...): Manually send the completion event for a session.
    get_analysis_status(session_id, runtime): Job run record for a session's analysis.
    get_stats(session): Session and prompt totals, refusal rate and per-model win rates.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from fleet_arena.api.deps import get_job_runtime
from fleet_arena.db.session import get_session
from fleet_arena.models import BehavioralFlag, ComparisonSession, ModelResponse, Ranking, Turn
from fleet_arena.schemas import AnalyzeRequest, ArenaStats, BehavioralFlagResource, ModelWinRate
from fleet_arena.services import JobRuntime, session_completed_event
from fleet_arena.services.judge import analysis_dedup_id

router = APIRouter(prefix="/api", tags=["analysis"])


@router.get("/internal/behaviors", response_model=list[BehavioralFlagResource])
async def list_behaviors(
    limit: int = Query(default=100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
) -> list[BehavioralFlagResource]:
    result = await session.exec(select(BehavioralFlag).order_by(BehavioralFlag.created_at.desc()).limit(limit))
    return [BehavioralFlagResource.model_validate(flag, from_attributes=True) for flag in result.scalars().all()]


@router.post("/analyze", status_code=status.HTTP_202_ACCEPTED)
async def trigger_analysis(
    payload: AnalyzeRequest,
    session: AsyncSession = Depends(get_session),
    runtime: JobRuntime = Depends(get_job_runtime),
) -> dict:
    if await session.get(ComparisonSession, payload.session_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    scheduled = await runtime.send(session_completed_event(payload.session_id))
    return {"runId": analysis_dedup_id(payload.session_id), "scheduled": bool(scheduled)}


@router.get("/internal/analysis/{session_id}")
async def get_analysis_status(
    session_id: UUID,
    runtime: JobRuntime = Depends(get_job_runtime),
) -> dict:
    run = await runtime.get_run(analysis_dedup_id(session_id))
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Analysis run not found")
    return {
        "runId": run.id,
        "status": run.status,
        "state": run.state,
        "permanent": run.permanent,
        "attempts": run.attempts,
        "error": run.error_message,
        "output": run.output,
    }


async def _count(session: AsyncSession, statement) -> int:
    result = await session.exec(statement)
    return result.scalar_one() or 0


@router.get("/internal/stats", response_model=ArenaStats)
async def get_stats(session: AsyncSession = Depends(get_session)) -> ArenaStats:
    total_sessions = await _count(session, select(func.count()).select_from(ComparisonSession))
    total_prompts = await _count(session, select(func.count()).select_from(Turn))
    total_responses = await _count(session, select(func.count()).select_from(ModelResponse))
    refusals = await _count(
        session,
        select(func.count()).select_from(ModelResponse).where(ModelResponse.finish_reason == "content_filter"),
    )

    wins_result = await session.exec(
        select(ModelResponse.model_id, func.count())
        .join(Ranking, Ranking.response_id == ModelResponse.id)
        .where(Ranking.rank == 1)
        .group_by(ModelResponse.model_id)
    )
    wins = {model_id: count for model_id, count in wins_result.all()}
    total_wins = sum(wins.values())
    win_rates = [
        ModelWinRate(model_id=model_id, wins=count, pct=round(count / total_wins * 100))
        for model_id, count in wins.items()
    ]
    win_rates.sort(key=lambda item: (-item.pct, -item.wins, item.model_id))

    return ArenaStats(
        total_sessions=total_sessions,
        total_prompts=total_prompts,
        refusal_rate=round(refusals / total_responses * 100, 1) if total_responses else 0.0,
        win_rates=win_rates,
    )
