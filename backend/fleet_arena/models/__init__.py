"""Convenience exports for ORM models.

Surface frequently used SQLModel classes so calling code can import them from a single module.
"""

from .session import MAX_MODELS, MIN_MODELS, SLOT_LABELS, ComparisonSession, slot_label
from .turn import RankingStatus, Turn
from .response import ModelResponse
from .ranking import Ranking
from .behavioral_flag import BehavioralFlag, FlagType, Severity
from .job import JobRun, JobStatus, JobStep

__all__ = [
    "ComparisonSession",
    "SLOT_LABELS",
    "MIN_MODELS",
    "MAX_MODELS",
    "slot_label",
    "Turn",
    "RankingStatus",
    "ModelResponse",
    "Ranking",
    "BehavioralFlag",
    "FlagType",
    "Severity",
    "JobRun",
    "JobStatus",
    "JobStep",
]
