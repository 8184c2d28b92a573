"""Durable background job models.

Classes:
    JobStatus: Runtime-level lifecycle of a job run.
    JobRun: One execution of a registered function, keyed by its dedup id.
    JobStep: Memoized output of a named step within a run.

Functions:
    set_updated_at(_, __, target): SQLAlchemy event hook that maintains the `updated_at` timestamp.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, Text, event
from sqlmodel import Field, SQLModel


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobRun(SQLModel, table=True):
    """Durable record of a job execution.

    Attributes:
        id: Dedup id of the triggering event; a second event with the same id maps onto this row.
        function_id: Registered function handling the event.
        event_name: Name of the triggering event.
        payload: Event data the function receives on every (re)execution.
        status: Runtime lifecycle, see JobStatus.
        state: Free-form progress marker maintained by the function itself.
        permanent: True when a failure must not be retried automatically.
        attempts: Number of executions started so far.
        error_message: Last failure reason, if any.
        output: Return value of the function once completed.
        lease_owner: Runtime instance currently allowed to execute the run.
        lease_expires_at: After this instant another instance may take the run over.
    """

    __tablename__ = "job_runs"

    id: str = Field(primary_key=True, max_length=200)
    function_id: str = Field(index=True, max_length=100)
    event_name: str = Field(max_length=100)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default=JobStatus.QUEUED.value, index=True, max_length=16)
    state: Optional[str] = Field(default=None, max_length=32)
    permanent: bool = Field(default=False)
    attempts: int = Field(default=0)
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    output: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    lease_owner: Optional[str] = Field(default=None, max_length=64)
    lease_expires_at: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class JobStep(SQLModel, table=True):
    __tablename__ = "job_steps"

    run_id: str = Field(foreign_key="job_runs.id", primary_key=True, max_length=200)
    name: str = Field(primary_key=True, max_length=100)
    output: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)


@event.listens_for(JobRun, "before_update", propagate=True)
def set_updated_at(_, __, target):
    target.updated_at = datetime.utcnow()
