"""Row-level persistence used by the streaming path.

Functions:
    create_response_rows(session, turn_id, model_ids): Bulk insert empty responses before streaming.
    finalize_response(session, response_id, ...): Single terminal write of a finished response.
    estimate_tokens(content): Rough token count used when the provider reports none.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID

from sqlalchemy import update
from sqlmodel.ext.asyncio.session import AsyncSession

from fleet_arena.models import ModelResponse


def estimate_tokens(content: str) -> int:
    """Approximate tokens as characters / 4, rounded half up."""

    return (len(content) + 2) // 4


async def create_response_rows(
    session: AsyncSession,
    turn_id: UUID,
    model_ids: Sequence[str],
) -> dict[str, UUID]:
    rows = [ModelResponse(turn_id=turn_id, model_id=model_id, content="") for model_id in model_ids]
    session.add_all(rows)
    await session.commit()
    return {row.model_id: row.id for row in rows}


async def finalize_response(
    session: AsyncSession,
    response_id: UUID,
    *,
    content: str,
    latency_ms: int,
    finish_reason: str,
) -> bool:
    """Write the final content once; returns False when the row was missing or already final."""

    result = await session.execute(
        update(ModelResponse)
        .where(ModelResponse.id == response_id)
        .where(ModelResponse.finish_reason.is_(None))  # type: ignore[union-attr]
        .values(
            content=content,
            latency_ms=latency_ms,
            finish_reason=finish_reason,
            token_count=estimate_tokens(content),
        )
    )
    await session.commit()
    return bool(result.rowcount)
