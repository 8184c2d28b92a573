"""Session lifecycle endpoints.

Endpoints:
    create_session(payload, ...): Open a blind comparison over 2-8 models.
    create_turn(payload, ...): Add the next turn once the previous one is ranked or skipped.
    complete_session(payload, ...): Mark a session complete and schedule its analysis.
    get_session_detail(session_id, ...): Session history with slot labels and revealed identities.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel.ext.asyncio.session import AsyncSession

from fleet_arena.api.deps import get_job_runtime, get_session_service, service_error
from fleet_arena.db.session import get_session
from fleet_arena.schemas import (
    SessionCompleteRequest,
    SessionCreatedResponse,
    SessionCreateRequest,
    SessionResource,
    TurnCreatedResponse,
    TurnCreateRequest,
)
from fleet_arena.services import JobRuntime, SessionService, session_completed_event

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.post("", response_model=SessionCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: SessionCreateRequest,
    session: AsyncSession = Depends(get_session),
    service: SessionService = Depends(get_session_service),
) -> SessionCreatedResponse:
    arena_session = await service.create_session(session, payload)
    return SessionCreatedResponse(session_id=arena_session.id)


@router.post("/turns", response_model=TurnCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_turn(
    payload: TurnCreateRequest,
    session: AsyncSession = Depends(get_session),
    service: SessionService = Depends(get_session_service),
) -> TurnCreatedResponse:
    try:
        turn = await service.create_turn(session, payload)
    except ValueError as exc:
        raise service_error(exc) from exc
    return TurnCreatedResponse(turn_id=turn.id, turn_number=turn.turn_number)


@router.post("/complete")
async def complete_session(
    payload: SessionCompleteRequest,
    session: AsyncSession = Depends(get_session),
    service: SessionService = Depends(get_session_service),
    runtime: JobRuntime = Depends(get_job_runtime),
) -> dict:
    try:
        changed = await service.complete_session(session, payload.session_id)
    except ValueError as exc:
        raise service_error(exc) from exc
    scheduled = await runtime.send(session_completed_event(payload.session_id))
    _LOGGER.info(
        "[sessions:%s] complete changed=%s analysis_scheduled=%s",
        payload.session_id,
        changed,
        bool(scheduled),
    )
    return {"ok": True, "alreadyComplete": not changed, "analysisScheduled": bool(scheduled)}


@router.get("/{session_id}", response_model=SessionResource)
async def get_session_detail(
    session_id: UUID,
    session: AsyncSession = Depends(get_session),
    service: SessionService = Depends(get_session_service),
) -> SessionResource:
    try:
        return await service.load_session(session, session_id)
    except ValueError as exc:
        raise service_error(exc) from exc
