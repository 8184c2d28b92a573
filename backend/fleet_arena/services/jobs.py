"""Durable, step-based background job runtime.

Runs and step outputs are stored in the database so a run that is retried or
resumed after a crash replays completed steps from their stored output instead
of executing them again.

Every execution holds a lease on its run row in the shared database. Claiming a
run is a single conditional update, so when several instances see the same
event only one of them executes it. A lease is renewed on every step and state
change; an instance that finds its lease gone stops without touching the run.

Classes:
    NonRetriableError: Raised by a job to fail its run permanently without retries.
    LeaseLostError: Raised inside an execution whose run was taken over by another instance.
    Event: Trigger carrying a name, payload, and dedup id.
    StepContext: Handed to job functions; memoizes named steps for one run.
    JobRuntime: Registers functions, deduplicates events, and executes runs with retries.

Functions:
    lease_expired(run, now): True when nobody may still be executing the run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from fleet_arena.models import JobRun, JobStatus, JobStep

_LOGGER = logging.getLogger(__name__)

_ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class NonRetriableError(Exception):
    pass


class LeaseLostError(Exception):
    pass


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, Exception) and not isinstance(exc, (NonRetriableError, LeaseLostError))


def lease_expired(run: JobRun, now: Optional[datetime] = None) -> bool:
    if run.lease_expires_at is None:
        return True
    return run.lease_expires_at < (now or datetime.utcnow())


def _claimable(now: datetime):
    return or_(
        and_(JobRun.status == JobStatus.FAILED.value, JobRun.permanent.is_(False)),
        and_(
            JobRun.status.in_(_ACTIVE_STATUSES),
            or_(JobRun.lease_expires_at.is_(None), JobRun.lease_expires_at < now),
        ),
    )


async def _extend_lease(
    session_factory: async_sessionmaker,
    run_id: str,
    owner: str,
    lease_seconds: float,
    **values: Any,
) -> bool:
    now = datetime.utcnow()
    async with session_factory() as session:
        result = await session.execute(
            update(JobRun)
            .where(JobRun.id == run_id, JobRun.lease_owner == owner)
            .values(lease_expires_at=now + timedelta(seconds=lease_seconds), updated_at=now, **values)
        )
        await session.commit()
    return result.rowcount == 1


@dataclass(slots=True)
class Event:
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


JobHandler = Callable[[Event, "StepContext"], Awaitable[Optional[dict[str, Any]]]]


@dataclass(slots=True)
class _Registration:
    function_id: str
    handler: JobHandler
    retries: int
    concurrency_key: Optional[Callable[[Event], str]]


class StepContext:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        run_id: str,
        owner: str,
        lease_seconds: float,
    ) -> None:
        self._session_factory = session_factory
        self._owner = owner
        self._lease_seconds = lease_seconds
        self.run_id = run_id
        self.attempt = 0

    async def step(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Return the stored output of *name* or run *fn* and store what it returns.

        The output must be JSON serialisable.
        """

        async with self._session_factory() as session:
            existing = await session.get(JobStep, (self.run_id, name))
        if existing is not None:
            _LOGGER.debug("[jobs:%s] step %s replayed from memo", self.run_id, name)
            return existing.output

        await self.renew()
        output = await fn()
        async with self._session_factory() as session:
            session.add(JobStep(run_id=self.run_id, name=name, output=output))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise LeaseLostError(f"Step {name} of {self.run_id} was stored by another execution") from exc
        return output

    async def set_state(self, state: str) -> None:
        await self.renew(state=state)

    async def renew(self, **values: Any) -> None:
        if not await _extend_lease(self._session_factory, self.run_id, self._owner, self._lease_seconds, **values):
            raise LeaseLostError(f"Lease on {self.run_id} is held by another runtime")


class JobRuntime:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        concurrency: int = 10,
        lease_seconds: float = 300.0,
        owner_id: Optional[str] = None,
        retry_wait: Optional[wait_base] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._semaphore = asyncio.Semaphore(concurrency)
        self._lease_seconds = lease_seconds
        self.owner_id = owner_id or uuid4().hex
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=60)
        self._sleep = sleep
        self._registrations: dict[str, _Registration] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._key_locks: dict[str, asyncio.Lock] = {}

    def register(
        self,
        event_name: str,
        handler: JobHandler,
        *,
        function_id: str,
        retries: int = 3,
        concurrency_key: Optional[Callable[[Event], str]] = None,
    ) -> None:
        if event_name in self._registrations:
            raise ValueError(f"A function is already registered for {event_name}")
        self._registrations[event_name] = _Registration(function_id, handler, retries, concurrency_key)

    def is_inflight(self, run_id: str) -> bool:
        return run_id in self._inflight

    async def send(self, *events: Event) -> list[str]:
        """Record and schedule runs; returns the run ids that were (re)scheduled.

        An event whose dedup id already names a run collapses into that run unless
        the run failed after exhausting retries or its lease expired.
        """

        scheduled: list[str] = []
        for event in events:
            registration = self._registrations.get(event.name)
            if registration is None:
                _LOGGER.warning("[jobs] no function registered for event=%s", event.name)
                continue
            run_id = event.id or f"{registration.function_id}-{uuid4()}"
            if await self._claim(run_id, event, registration):
                self._start(run_id, event, registration)
                scheduled.append(run_id)
            else:
                _LOGGER.info("[jobs:%s] duplicate event collapsed", run_id)
        return scheduled

    async def recover(self) -> list[str]:
        """Take over queued or running runs whose lease has expired."""

        now = datetime.utcnow()
        async with self._session_factory() as session:
            result = await session.exec(
                select(JobRun)
                .where(JobRun.status.in_(_ACTIVE_STATUSES))
                .where(or_(JobRun.lease_expires_at.is_(None), JobRun.lease_expires_at < now))
            )
            orphans = [run for run in result.scalars().all() if run.id not in self._inflight]
        resumed: list[str] = []
        for run in orphans:
            registration = self._registrations.get(run.event_name)
            if registration is None:
                continue
            event = Event(name=run.event_name, data=dict(run.payload or {}), id=run.id)
            if await self._claim(run.id, event, registration):
                self._start(run.id, event, registration)
                resumed.append(run.id)
        if resumed:
            _LOGGER.info("[jobs] resumed %d orphaned runs", len(resumed))
        return resumed

    async def drain(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def get_run(self, run_id: str) -> Optional[JobRun]:
        async with self._session_factory() as session:
            return await session.get(JobRun, run_id)

    async def _claim(self, run_id: str, event: Event, registration: _Registration) -> bool:
        if run_id in self._inflight:
            return False
        now = datetime.utcnow()
        lease_expires_at = now + timedelta(seconds=self._lease_seconds)
        async with self._session_factory() as session:
            result = await session.execute(
                update(JobRun)
                .where(JobRun.id == run_id, _claimable(now))
                .values(
                    status=JobStatus.QUEUED.value,
                    lease_owner=self.owner_id,
                    lease_expires_at=lease_expires_at,
                    updated_at=now,
                )
            )
            if result.rowcount == 1:
                await session.commit()
                return True
            if await session.get(JobRun, run_id) is not None:
                return False
            session.add(
                JobRun(
                    id=run_id,
                    function_id=registration.function_id,
                    event_name=event.name,
                    payload=event.data,
                    status=JobStatus.QUEUED.value,
                    state="queued",
                    lease_owner=self.owner_id,
                    lease_expires_at=lease_expires_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    def _start(self, run_id: str, event: Event, registration: _Registration) -> None:
        task = asyncio.create_task(self._execute(run_id, event, registration))
        self._inflight[run_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(run_id, None))

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    async def _execute(self, run_id: str, event: Event, registration: _Registration) -> None:
        key = registration.concurrency_key(event) if registration.concurrency_key else run_id
        context = StepContext(self._session_factory, run_id, self.owner_id, self._lease_seconds)
        async with self._lock_for(key), self._semaphore:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(registration.retries + 1),
                wait=self._retry_wait,
                retry=retry_if_exception(_is_retryable),
                sleep=self._sleep,
                before_sleep=lambda state: _LOGGER.warning(
                    "[jobs:%s] attempt %d failed, retrying: %s",
                    run_id,
                    state.attempt_number,
                    state.outcome.exception() if state.outcome else None,
                ),
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        context.attempt = attempt.retry_state.attempt_number
                        await context.renew(status=JobStatus.RUNNING.value, attempts=JobRun.attempts + 1)
                        output = await registration.handler(event, context)
            except LeaseLostError as exc:
                _LOGGER.warning("[jobs:%s] stopped, run taken over elsewhere: %s", run_id, exc)
            except NonRetriableError as exc:
                _LOGGER.error("[jobs:%s] failed permanently: %s", run_id, exc)
                await self._finish(run_id, JobStatus.FAILED, error=str(exc), permanent=True)
            except Exception as exc:
                _LOGGER.exception("[jobs:%s] retries exhausted", run_id)
                await self._finish(run_id, JobStatus.FAILED, error=str(exc), permanent=False)
            else:
                await self._finish(run_id, JobStatus.COMPLETED, output=output)

    async def _finish(
        self,
        run_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        permanent: bool = False,
        output: Optional[dict[str, Any]] = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": status.value,
            "permanent": permanent,
            "error_message": error,
            "output": output,
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": datetime.utcnow(),
        }
        if status == JobStatus.FAILED:
            values["state"] = "failed"
        async with self._session_factory() as session:
            result = await session.execute(
                update(JobRun).where(JobRun.id == run_id, JobRun.lease_owner == self.owner_id).values(**values)
            )
            await session.commit()
        if result.rowcount != 1:
            _LOGGER.warning("[jobs:%s] lease lost before the %s outcome was recorded", run_id, status.value)
