from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel

from ..models import utc_now


class TaskRow(SQLModel, table=True):
    """Task owned by the workflow engine."""

    __tablename__ = "tasks"

    id: str = Field(primary_key=True)
    name: str = ""
    status: str = Field(default="not-started")
    owner: Optional[str] = None
    current_role: Optional[str] = None
    redelegation_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class RoleRow(SQLModel, table=True):
    """Catalog role; steps are stored in ``StepRow``."""

    __tablename__ = "workflow_roles"

    id: str = Field(primary_key=True)
    priority: int = 0
    definition: dict = Field(sa_column=Column(JSON))


class StepRow(SQLModel, table=True):
    """Catalog step with its conditions and actions serialized inline."""

    __tablename__ = "workflow_steps"

    id: str = Field(primary_key=True)
    role_id: str = Field(index=True)
    sequence_number: int
    definition: dict = Field(sa_column=Column(JSON))


class TransitionRow(SQLModel, table=True):
    """Catalog-declared edge between two roles."""

    __tablename__ = "role_transitions"

    id: str = Field(primary_key=True)
    from_role_id: str = Field(index=True)
    definition: dict = Field(sa_column=Column(JSON))


class StepProgressRow(SQLModel, table=True):
    """One attempt of a (task, step, role) triple; never deleted."""

    __tablename__ = "workflow_step_progress"
    __table_args__ = (
        Index(
            "uq_step_progress_open_attempt",
            "task_id",
            "step_id",
            "role_id",
            unique=True,
            sqlite_where=text("status = 'IN_PROGRESS'"),
            postgresql_where=text("status = 'IN_PROGRESS'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    step_id: str
    role_id: str
    status: str = Field(default="NOT_STARTED")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))


class ExecutionRow(SQLModel, table=True):
    """Workflow execution document guarded by an optimistic ``version``."""

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    document: dict = Field(sa_column=Column(JSON))


class DelegationRow(SQLModel, table=True):
    """Append-only role handoff history."""

    __tablename__ = "delegation_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    from_role: str
    to_role: str
    transition_id: Optional[str] = None
    message: str = ""
    success: bool = True
    delegated_at: datetime = Field(default_factory=utc_now)
