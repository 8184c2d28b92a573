"""Fan-out streaming endpoint.

Endpoints:
    stream_turn(request, ...): Rate-limit, validate, and stream every model's answer as SSE frames.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from fleet_arena.api.deps import client_key, get_fanout, get_rate_limiter
from fleet_arena.schemas import StreamRequest
from fleet_arena.services import FanoutCoordinator, encode_sse
from fleet_arena.services.rate_limit import RateLimiter

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["stream"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _sse_frames(fanout: FanoutCoordinator, payload: StreamRequest) -> AsyncIterator[str]:
    async for event in fanout.run(
        session_id=payload.session_id,
        turn_id=payload.turn_id,
        model_ids=payload.model_ids,
        messages=[message.model_dump() for message in payload.messages],
    ):
        yield encode_sse(event)


@router.post("/stream")
async def stream_turn(
    request: Request,
    fanout: FanoutCoordinator = Depends(get_fanout),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> StreamingResponse:
    key = client_key(request)
    decision = await limiter.check(key)
    if not decision.allowed:
        _LOGGER.info("[stream] rate limited key=%s retry_after=%d", key, decision.retry_after_seconds)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too Many Requests",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )

    try:
        payload = StreamRequest.model_validate(await request.json())
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body must be JSON") from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=[{"loc": error["loc"], "msg": error["msg"]} for error in exc.errors()],
        ) from exc

    return StreamingResponse(_sse_frames(fanout, payload), media_type="text/event-stream", headers=_SSE_HEADERS)
