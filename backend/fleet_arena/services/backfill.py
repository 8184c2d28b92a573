"""Periodic reconciliation for sessions the judge never analysed.

Classes:
    BackfillSweep: Finds complete, unflagged sessions and re-sends their completion event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleet_arena.models import BehavioralFlag, ComparisonSession, JobRun, JobStatus
from fleet_arena.services.jobs import JobRuntime, lease_expired
from fleet_arena.services.judge import analysis_dedup_id, session_completed_event

_LOGGER = logging.getLogger(__name__)


class BackfillSweep:
    """Re-enqueue analysis for complete sessions that have no flags.

    A session is skipped when its analysis run completed (zero flags is a valid
    outcome) or failed permanently. Runs that exhausted their retries or were
    orphaned by a crash (their lease expired) are re-sent under the same dedup
    id, which resumes them. A run leased by a live instance is left to it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        runtime: JobRuntime,
        *,
        batch_size: int = 50,
    ) -> None:
        self._session_factory = session_factory
        self._runtime = runtime
        self._batch_size = batch_size

    async def find_unanalyzed(self) -> list[UUID]:
        candidates: list[UUID] = []
        offset = 0
        async with self._session_factory() as session:
            while len(candidates) < self._batch_size:
                result = await session.exec(
                    select(ComparisonSession.id)
                    .where(ComparisonSession.is_complete.is_(True))  # type: ignore[attr-defined]
                    .where(~exists().where(BehavioralFlag.session_id == ComparisonSession.id))
                    .order_by(ComparisonSession.created_at.desc())
                    .offset(offset)
                    .limit(self._batch_size)
                )
                page = list(result.scalars().all())
                if not page:
                    break
                offset += len(page)

                runs_result = await session.exec(
                    select(JobRun).where(JobRun.id.in_([analysis_dedup_id(session_id) for session_id in page]))
                )
                runs = {run.id: run for run in runs_result.scalars().all()}
                for session_id in page:
                    if self._needs_analysis(runs.get(analysis_dedup_id(session_id))):
                        candidates.append(session_id)
        return candidates[: self._batch_size]

    def _needs_analysis(self, run: Optional[JobRun]) -> bool:
        if run is None:
            return True
        if self._runtime.is_inflight(run.id):
            return False
        if run.status == JobStatus.COMPLETED.value:
            return False
        if run.status == JobStatus.FAILED.value:
            return not run.permanent
        return lease_expired(run)

    async def run_once(self) -> dict[str, int]:
        session_ids = await self.find_unanalyzed()
        if not session_ids:
            _LOGGER.info("[backfill] no unanalyzed sessions")
            return {"found": 0, "scheduled": 0}
        scheduled = await self._runtime.send(*(session_completed_event(session_id) for session_id in session_ids))
        _LOGGER.info("[backfill] found=%d scheduled=%d", len(session_ids), len(scheduled))
        return {"found": len(session_ids), "scheduled": len(scheduled)}

    async def run_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.run_once()
            except Exception:
                _LOGGER.exception("[backfill] sweep failed")
