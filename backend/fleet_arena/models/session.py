"""Comparison session ORM model.

Classes:
    ComparisonSession: Ordered set of models compared blind across a series of turns.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

SLOT_LABELS = ("A", "B", "C", "D", "E", "F", "G", "H")
MIN_MODELS = 2
MAX_MODELS = len(SLOT_LABELS)


class ComparisonSession(SQLModel, table=True):
    """A blind comparison between 2-8 models.

    Attributes:
        id: Primary key for the session.
        model_ids: Upstream model identifiers; position in this list is the slot order and
            never changes after creation.
        user_id: Optional owner reference.
        is_complete: Whether the user finished the session.
        completed_at: Timestamp of the completion flip.
        created_at: Timestamp when the session was created.
    """

    __tablename__ = "sessions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    model_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    user_id: Optional[str] = Field(default=None, index=True)
    is_complete: bool = Field(default=False, index=True)
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


def slot_label(model_ids: list[str], model_id: str) -> str:
    """Derive the positional slot letter for *model_id* within a session."""

    try:
        index = model_ids.index(model_id)
    except ValueError:
        return "?"
    return SLOT_LABELS[index] if index < len(SLOT_LABELS) else "?"
