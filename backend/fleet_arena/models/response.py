"""Response ORM model.

Classes:
    ModelResponse: Final output of one model for one turn, written once when its stream finishes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel


class ModelResponse(SQLModel, table=True):
    """Response row created empty before streaming and finalized by its model task.

    A row with no ``finish_reason`` never finished (error or timeout) and is not
    eligible for ranking.
    """

    __tablename__ = "responses"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    turn_id: UUID = Field(foreign_key="turns.id", index=True)
    model_id: str
    content: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    token_count: Optional[int] = None
    latency_ms: Optional[int] = None
    finish_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_finalized(self) -> bool:
        return self.finish_reason is not None
