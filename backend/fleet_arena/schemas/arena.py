"""Pydantic schemas for the arena endpoints.

Wire payloads use camelCase keys; python attributes stay snake_case.

Classes:
    ChatMessage, StreamRequest: Validate the fan-out streaming request.
    SessionCreateRequest, SessionCreatedResponse, TurnCreateRequest, TurnCreatedResponse: Session lifecycle.
    RankingEntry, RankingSubmitRequest, RankingSkipRequest, RevealedResponse, RankingSubmitResponse: Ranking and reveal.
    SessionCompleteRequest, AnalyzeRequest: Completion and judge trigger payloads.
    ResponseResource, TurnResource, SessionResource: Read models for session history.
    ModelWinRate, ArenaStats: Aggregate usage and preference numbers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from fleet_arena.models import MAX_MODELS, MIN_MODELS


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _unique_model_ids(value: list[str]) -> list[str]:
    cleaned = [item.strip() for item in value]
    if any(not item for item in cleaned):
        raise ValueError("model ids must be non-empty")
    if len(set(cleaned)) != len(cleaned):
        raise ValueError("model ids must be unique")
    return cleaned


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class StreamRequest(CamelModel):
    session_id: UUID
    turn_id: UUID
    model_ids: list[str] = Field(min_length=MIN_MODELS, max_length=MAX_MODELS)
    messages: list[ChatMessage] = Field(min_length=1)

    @field_validator("model_ids")
    @classmethod
    def check_model_ids(cls, value: list[str]) -> list[str]:
        return _unique_model_ids(value)


class SessionCreateRequest(CamelModel):
    model_ids: list[str] = Field(min_length=MIN_MODELS, max_length=MAX_MODELS)
    user_id: Optional[str] = None

    @field_validator("model_ids")
    @classmethod
    def check_model_ids(cls, value: list[str]) -> list[str]:
        return _unique_model_ids(value)


class SessionCreatedResponse(CamelModel):
    session_id: UUID


class TurnCreateRequest(CamelModel):
    session_id: UUID
    prompt: str = Field(min_length=1)
    turn_number: Optional[int] = Field(default=None, ge=1)

    @field_validator("prompt")
    @classmethod
    def trim_prompt(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("prompt must not be blank")
        return text


class TurnCreatedResponse(CamelModel):
    turn_id: UUID
    turn_number: int


class RankingEntry(CamelModel):
    response_id: UUID
    rank: int = Field(ge=1)


class RankingSubmitRequest(CamelModel):
    session_id: UUID
    turn_id: UUID
    rankings: list[RankingEntry] = Field(min_length=1)


class RankingSkipRequest(CamelModel):
    turn_id: UUID


class RevealedResponse(CamelModel):
    id: UUID
    model_id: str
    slot_label: str


class RankingSubmitResponse(CamelModel):
    revealed: list[RevealedResponse]


class SessionCompleteRequest(CamelModel):
    session_id: UUID


class AnalyzeRequest(CamelModel):
    session_id: UUID


class ResponseResource(CamelModel):
    id: UUID
    slot_label: str
    content: str
    model_id: Optional[str] = None
    token_count: Optional[int] = None
    latency_ms: Optional[int] = None
    finish_reason: Optional[str] = None
    rank: Optional[int] = None


class TurnResource(CamelModel):
    id: UUID
    turn_number: int
    prompt: str
    ranking_status: str
    responses: list[ResponseResource] = Field(default_factory=list)


class SessionResource(CamelModel):
    id: UUID
    model_ids: Optional[list[str]] = None
    is_complete: bool
    created_at: datetime
    completed_at: Optional[datetime] = None
    turns: list[TurnResource] = Field(default_factory=list)


class ModelWinRate(CamelModel):
    model_id: str
    wins: int
    pct: int


class ArenaStats(CamelModel):
    total_sessions: int
    total_prompts: int
    refusal_rate: float
    win_rates: list[ModelWinRate] = Field(default_factory=list)
