"""Application bootstrap for the Fleet Arena gateway API.

This module wires the FastAPI application, attaches middleware, and owns the long-lived
services shared by every request.

Functions:
    lifespan(app: FastAPI): Build clients, the job runtime and the backfill loop; tear them down on shutdown.
    validation_error_handler(request, exc): Report malformed request bodies as 400.
    health_check(): Lightweight readiness probe used by monitoring and local smoke tests.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fleet_arena.api import api_router
from fleet_arena.core.config import get_settings
from fleet_arena.db.session import SessionLocal, init_db
from fleet_arena.services import (
    BackfillSweep,
    FanoutCoordinator,
    JobRuntime,
    JudgeClient,
    JudgePipeline,
    KeyRing,
    UpstreamClient,
    build_rate_limiter,
)
from fleet_arena.services.judge import ANALYZE_FUNCTION_ID, SESSION_COMPLETED_EVENT

settings = get_settings()
_LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()

    key_ring = KeyRing.from_secret(settings.openrouter_api_key)
    if not len(key_ring):
        _LOGGER.warning("OPENROUTER_API_KEY is not set; model streams will fail until it is configured")
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
    upstream = UpstreamClient(http_client, key_ring, settings=settings)
    fanout = FanoutCoordinator(upstream, SessionLocal)
    rate_limiter = build_rate_limiter(settings)

    judge_client = JudgeClient(key_ring=key_ring, settings=settings)
    runtime = JobRuntime(
        SessionLocal,
        concurrency=settings.judge_concurrency,
        lease_seconds=settings.job_lease_seconds,
    )
    runtime.register(
        SESSION_COMPLETED_EVENT,
        JudgePipeline(SessionLocal, judge_client, settings=settings),
        function_id=ANALYZE_FUNCTION_ID,
        retries=settings.judge_retries,
        concurrency_key=lambda event: str(event.data["session_id"]),
    )

    app.state.fanout = fanout
    app.state.rate_limiter = rate_limiter
    app.state.job_runtime = runtime

    backfill_task = None
    if settings.enable_background_jobs:
        await runtime.recover()
        sweep = BackfillSweep(SessionLocal, runtime, batch_size=settings.backfill_batch_size)
        backfill_task = asyncio.create_task(sweep.run_forever(settings.backfill_interval_seconds))

    yield

    if backfill_task is not None:
        backfill_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await backfill_task
    await fanout.drain()
    await runtime.drain()
    await upstream.aclose()
    await judge_client.aclose()
    redis_client = getattr(rate_limiter, "client", None)
    if redis_client is not None:
        await redis_client.aclose()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]},
    )


@app.get("/health")
async def health_check():
    return {"status": "ok"}
