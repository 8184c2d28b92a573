"""Concurrent fan-out of one turn to every model of a session.

Classes:
    FanoutCoordinator: Creates response rows, streams each model in its own task, and multiplexes
        their events into a single outbound stream.

Functions:
    encode_sse(event): Frame an event as a Server-Sent-Events data line.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Coroutine, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleet_arena.models import MAX_MODELS, MIN_MODELS, SLOT_LABELS
from fleet_arena.services.persistence import create_response_rows, finalize_response
from fleet_arena.services.upstream import UpstreamClient, UpstreamDelta, UpstreamFinish

_LOGGER = logging.getLogger(__name__)


def encode_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


class FanoutCoordinator:
    """Run one turn against 2-8 models concurrently.

    Model tasks are owned by the coordinator rather than by the consumer of
    :meth:`run`: a consumer that stops iterating (client disconnect) leaves the
    tasks running so every finished response is still persisted.
    """

    def __init__(self, upstream: UpstreamClient, session_factory: async_sessionmaker) -> None:
        self._upstream = upstream
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()

    async def run(
        self,
        *,
        session_id: UUID,
        turn_id: UUID,
        model_ids: Sequence[str],
        messages: Sequence[dict[str, str]],
    ) -> AsyncIterator[dict[str, Any]]:
        model_ids = list(model_ids)
        if not MIN_MODELS <= len(model_ids) <= MAX_MODELS:
            raise ValueError(f"Expected {MIN_MODELS}-{MAX_MODELS} models, got {len(model_ids)}")
        if len(set(model_ids)) != len(model_ids):
            raise ValueError("Model ids must be unique within a turn")

        response_ids = await self._create_rows(turn_id, model_ids)
        _LOGGER.info("[stream:%s] starting models=%s session=%s", turn_id, model_ids, session_id)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        final_ids = {model_id: "" for model_id in model_ids}
        model_tasks = [
            self._spawn(
                self._run_model(
                    turn_id=turn_id,
                    slot=SLOT_LABELS[index],
                    model_id=model_id,
                    response_id=response_ids.get(model_id),
                    messages=messages,
                    queue=queue,
                    final_ids=final_ids,
                )
            )
            for index, model_id in enumerate(model_ids)
        ]
        self._spawn(self._complete_when_settled(turn_id, model_tasks, final_ids, queue))

        while True:
            event = await queue.get()
            yield event
            if event["type"] == "complete":
                return

    async def drain(self) -> None:
        """Wait for every in-flight model task, including those whose consumer went away."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _create_rows(self, turn_id: UUID, model_ids: list[str]) -> dict[str, UUID]:
        try:
            async with self._session_factory() as session:
                return await create_response_rows(session, turn_id, model_ids)
        except SQLAlchemyError as exc:
            _LOGGER.error("[stream:%s] bulk response insert failed detail=%s", turn_id, exc)
            return {}

    async def _run_model(
        self,
        *,
        turn_id: UUID,
        slot: str,
        model_id: str,
        response_id: Optional[UUID],
        messages: Sequence[dict[str, str]],
        queue: asyncio.Queue,
        final_ids: dict[str, str],
    ) -> None:
        tag = f"[stream:{turn_id}:{slot}]"
        terminal_sent = False
        try:
            async with aclosing(self._upstream.stream(model_id, messages, log_tag=tag)) as events:
                async for event in events:
                    if isinstance(event, UpstreamDelta):
                        queue.put_nowait({"type": "delta", "slotLabel": slot, "delta": event.delta})
                        continue
                    if isinstance(event, UpstreamFinish):
                        finalized = await self._finalize(tag, response_id, event)
                        if finalized:
                            final_ids[model_id] = str(response_id)
                        _LOGGER.info(
                            "%s done model=%s latency_ms=%d chars=%d finish_reason=%s",
                            tag,
                            model_id,
                            event.latency_ms,
                            len(event.full_content),
                            event.finish_reason,
                        )
                        queue.put_nowait(
                            {
                                "type": "done",
                                "slotLabel": slot,
                                "responseId": final_ids[model_id],
                                "finishReason": event.finish_reason,
                            }
                        )
                    else:
                        queue.put_nowait({"type": "error", "slotLabel": slot, "error": event.message})
                    terminal_sent = True
                    break
        except Exception as exc:
            _LOGGER.exception("%s unexpected error model=%s", tag, model_id)
            if not terminal_sent:
                queue.put_nowait({"type": "error", "slotLabel": slot, "error": str(exc) or "Unexpected error"})
                terminal_sent = True
        if not terminal_sent:
            queue.put_nowait({"type": "error", "slotLabel": slot, "error": "Stream ended without a result"})

    async def _finalize(self, tag: str, response_id: Optional[UUID], event: UpstreamFinish) -> bool:
        if response_id is None:
            return False
        try:
            async with self._session_factory() as session:
                updated = await finalize_response(
                    session,
                    response_id,
                    content=event.full_content,
                    latency_ms=event.latency_ms,
                    finish_reason=event.finish_reason,
                )
        except SQLAlchemyError as exc:
            _LOGGER.error("%s response update failed response_id=%s detail=%s", tag, response_id, exc)
            return False
        if not updated:
            _LOGGER.warning("%s response row missing or already final response_id=%s", tag, response_id)
        return updated

    async def _complete_when_settled(
        self,
        turn_id: UUID,
        model_tasks: list[asyncio.Task],
        final_ids: dict[str, str],
        queue: asyncio.Queue,
    ) -> None:
        await asyncio.gather(*model_tasks, return_exceptions=True)
        _LOGGER.info("[stream:%s] complete response_ids=%s", turn_id, final_ids)
        queue.put_nowait({"type": "complete", "responseIds": dict(final_ids)})
