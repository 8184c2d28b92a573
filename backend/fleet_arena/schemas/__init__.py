"""Convenience exports for API schemas.

Re-exports the pydantic models used across the backend so consumers can import from one module.
"""

from .arena import (
    AnalyzeRequest,
    ArenaStats,
    ChatMessage,
    ModelWinRate,
    RankingEntry,
    RankingSkipRequest,
    RankingSubmitRequest,
    RankingSubmitResponse,
    ResponseResource,
    RevealedResponse,
    SessionCompleteRequest,
    SessionCreatedResponse,
    SessionCreateRequest,
    SessionResource,
    StreamRequest,
    TurnCreatedResponse,
    TurnCreateRequest,
    TurnResource,
)
from .flags import JUDGE_FLAGS_ADAPTER, BehavioralFlagResource, FlagEvidence, JudgeFlag

__all__ = [
    "ChatMessage",
    "StreamRequest",
    "SessionCreateRequest",
    "SessionCreatedResponse",
    "TurnCreateRequest",
    "TurnCreatedResponse",
    "RankingEntry",
    "RankingSubmitRequest",
    "RankingSkipRequest",
    "RankingSubmitResponse",
    "RevealedResponse",
    "SessionCompleteRequest",
    "AnalyzeRequest",
    "ResponseResource",
    "TurnResource",
    "SessionResource",
    "FlagEvidence",
    "JudgeFlag",
    "JUDGE_FLAGS_ADAPTER",
    "BehavioralFlagResource",
    "ModelWinRate",
    "ArenaStats",
]
