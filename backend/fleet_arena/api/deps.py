"""Request dependencies resolving the long-lived services built in the app lifespan."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from fleet_arena.services import FanoutCoordinator, JobRuntime, SessionService
from fleet_arena.services.rate_limit import RateLimiter


def get_fanout(request: Request) -> FanoutCoordinator:
    return request.app.state.fanout


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_job_runtime(request: Request) -> JobRuntime:
    return request.app.state.job_runtime


def get_session_service() -> SessionService:
    return SessionService()


def client_key(request: Request) -> str:
    """Rate-limit identity: first X-Forwarded-For hop, else the peer address."""

    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def service_error(exc: ValueError) -> HTTPException:
    message = str(exc)
    lowered = message.lower()
    if "not found" in lowered:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=message)
    if "pending" in lowered or "already" in lowered:
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
