import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENABLE_BACKGROUND_JOBS", "false")

from collections.abc import AsyncGenerator, Awaitable, Callable
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from fleet_arena.api.deps import get_fanout, get_job_runtime, get_rate_limiter
from fleet_arena.db.session import get_session
from fleet_arena.main import app
from fleet_arena.models import ComparisonSession, ModelResponse, Ranking, RankingStatus, Turn
from fleet_arena.services import FanoutCoordinator, InMemoryRateLimiter, JobRuntime

from fakes import FakeUpstream


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture()
def runtime(session_factory) -> JobRuntime:
    return JobRuntime(session_factory, concurrency=10, sleep=_no_sleep)


@pytest.fixture()
def make_turn(session_factory) -> Callable[..., Awaitable[tuple[UUID, UUID]]]:
    async def _make_turn(
        model_ids: list[str],
        *,
        prompt: str = "Explain backpressure",
        complete: bool = False,
    ) -> tuple[UUID, UUID]:
        async with session_factory() as db_session:
            arena_session = ComparisonSession(model_ids=model_ids, is_complete=complete)
            db_session.add(arena_session)
            await db_session.commit()
            turn = Turn(session_id=arena_session.id, turn_number=1, prompt=prompt)
            db_session.add(turn)
            await db_session.commit()
            return arena_session.id, turn.id

    return _make_turn


@pytest.fixture()
def seed_ranked_session(session_factory) -> Callable[..., Awaitable[dict]]:
    """One complete session, one submitted turn, two finalized responses ranked [1, 2]."""

    async def _seed(model_ids: tuple[str, str] = ("openai/gpt-4o", "anthropic/claude-3.5-sonnet")) -> dict:
        async with session_factory() as db_session:
            arena_session = ComparisonSession(model_ids=list(model_ids), is_complete=True)
            db_session.add(arena_session)
            await db_session.commit()
            turn = Turn(
                session_id=arena_session.id,
                turn_number=1,
                prompt="Summarise the CAP theorem",
                ranking_status=RankingStatus.SUBMITTED.value,
            )
            db_session.add(turn)
            await db_session.commit()
            responses = [
                ModelResponse(
                    turn_id=turn.id,
                    model_id=model_id,
                    content=f"Answer from {model_id}",
                    token_count=5,
                    latency_ms=100,
                    finish_reason="stop",
                )
                for model_id in model_ids
            ]
            db_session.add_all(responses)
            await db_session.commit()
            db_session.add_all(
                [
                    Ranking(session_id=arena_session.id, turn_id=turn.id, response_id=response.id, rank=rank)
                    for rank, response in enumerate(responses, start=1)
                ]
            )
            await db_session.commit()
            return {
                "session_id": arena_session.id,
                "turn_id": turn.id,
                "response_ids": [response.id for response in responses],
                "model_ids": list(model_ids),
            }

    return _seed


@pytest.fixture()
def fake_upstream() -> FakeUpstream:
    return FakeUpstream({})


@pytest.fixture()
def rate_limiter() -> InMemoryRateLimiter:
    return InMemoryRateLimiter(limit=20, window_seconds=60.0)


@pytest_asyncio.fixture()
async def client(
    session_factory,
    fake_upstream: FakeUpstream,
    rate_limiter: InMemoryRateLimiter,
    runtime: JobRuntime,
) -> AsyncGenerator[AsyncClient, None]:
    fanout = FanoutCoordinator(fake_upstream, session_factory)

    async def _override_session():
        async with session_factory() as db_session:
            yield db_session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_fanout] = lambda: fanout
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[get_job_runtime] = lambda: runtime
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client
    await fanout.drain()
    await runtime.drain()
    app.dependency_overrides.clear()
