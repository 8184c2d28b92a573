"""Behavioral flag ORM model.

Classes:
    FlagType: Closed set of behaviors the judge may report.
    Severity: Judge-assigned severity levels.
    BehavioralFlag: One judge annotation about a model within a session.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel


class FlagType(str, Enum):
    REFUSAL = "refusal"
    CONTEXT_LOSS = "context_loss"
    SYCOPHANCY = "sycophancy"
    VERBOSITY = "verbosity"
    RANK_REVERSAL = "rank_reversal"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BehavioralFlag(SQLModel, table=True):
    __tablename__ = "behavioral_flags"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    session_id: UUID = Field(foreign_key="sessions.id", index=True)
    turn_id: Optional[UUID] = Field(default=None, foreign_key="turns.id")
    model_id: str
    flag_type: str = Field(max_length=32)
    severity: str = Field(max_length=16)
    description: str = Field(sa_column=Column(Text, nullable=False))
    evidence: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    confidence: float
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
