"""Schemas for judge output and behavioral flag payloads.

Classes:
    FlagEvidence: Evidence blob attached to a judge flag.
    JudgeFlag: One flag object as returned by the judge model.
    BehavioralFlagResource: Read model for the internal behaviors endpoint.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from fleet_arena.models import FlagType, Severity
from fleet_arena.schemas.arena import CamelModel


class FlagEvidence(BaseModel):
    model_config = ConfigDict(extra="allow")

    detail: str
    turn: Optional[int] = None


class JudgeFlag(BaseModel):
    model_id: str = Field(min_length=1)
    turn_id: Optional[str] = None
    flag_type: FlagType
    severity: Severity
    description: str
    evidence: FlagEvidence
    confidence: float = Field(ge=0.0, le=1.0)


JUDGE_FLAGS_ADAPTER = TypeAdapter(list[JudgeFlag])


class BehavioralFlagResource(CamelModel):
    id: UUID
    session_id: UUID
    turn_id: Optional[UUID] = None
    model_id: str
    flag_type: str
    severity: str
    description: str
    evidence: dict
    confidence: float
    created_at: datetime
