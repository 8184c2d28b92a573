"""Turn ORM model.

Classes:
    RankingStatus: Tri-state gate controlling whether the next turn may start.
    Turn: One prompt submitted to every model of a session.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Column, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class RankingStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    SKIPPED = "skipped"


class Turn(SQLModel, table=True):
    __tablename__ = "turns"
    __table_args__ = (
        UniqueConstraint("session_id", "turn_number", name="uq_turns_session_number"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    session_id: UUID = Field(foreign_key="sessions.id", index=True)
    turn_number: int
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    ranking_status: str = Field(
        default=RankingStatus.PENDING.value,
        sa_column=Column(String(16), nullable=False, default=RankingStatus.PENDING.value),
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
