"""Ranking ORM model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Ranking(SQLModel, table=True):
    __tablename__ = "rankings"
    __table_args__ = (
        UniqueConstraint("turn_id", "rank", name="uq_rankings_turn_rank"),
        UniqueConstraint("turn_id", "response_id", name="uq_rankings_turn_response"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    session_id: UUID = Field(foreign_key="sessions.id", index=True)
    turn_id: UUID = Field(foreign_key="turns.id", index=True)
    response_id: UUID = Field(foreign_key="responses.id")
    rank: int
    created_at: datetime = Field(default_factory=datetime.utcnow)
