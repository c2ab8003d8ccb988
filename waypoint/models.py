"""Core entities for roles, steps, progress records and executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator

from .conditions import StepCondition, WaypointModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    NEEDS_REVIEW = "needs-review"
    NEEDS_CHANGES = "needs-changes"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ExecutionMode(str, Enum):
    GUIDED = "GUIDED"
    AUTOMATED = "AUTOMATED"
    HYBRID = "HYBRID"


class ExecutionPhase(str, Enum):
    CREATED = "created"
    BOOTSTRAPPED = "bootstrapped"
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = (ExecutionPhase.COMPLETED, ExecutionPhase.FAILED)


# ---------------------------------------------------------------------------
# Catalog entities


class StepAction(WaypointModel):
    """Ordered side-effect descriptor; executed by the external actor."""

    id: Optional[str] = None
    name: str
    action_type: str = "MCP_CALL"
    action_data: dict[str, Any] = Field(default_factory=dict)
    sequence_order: int = 0


class PatternEnforcement(WaypointModel):
    required_patterns: list[str] = Field(default_factory=list)
    anti_patterns: list[str] = Field(default_factory=list)
    compliance_checks: list[Any] = Field(default_factory=list)


class WorkflowStep(WaypointModel):
    """Ordered unit of work within a role."""

    id: str = ""
    role_id: str = ""
    name: str
    display_name: str = ""
    description: str = ""
    step_type: str = "ACTION"
    sequence_number: int
    is_required: bool = True
    trigger_report: bool = False
    report_type: Optional[str] = None
    report_template: Optional[str] = None
    estimated_time: Optional[str] = None
    behavioral_context: dict[str, Any] = Field(default_factory=dict)
    approach_guidance: dict[str, Any] = Field(default_factory=dict)
    quality_checklist: list[str] = Field(default_factory=list)
    pattern_enforcement: PatternEnforcement = Field(default_factory=PatternEnforcement)
    conditions: list[StepCondition] = Field(default_factory=list)
    actions: list[StepAction] = Field(default_factory=list)

    @field_validator("actions")
    @classmethod
    def _order_actions(cls, actions: list[StepAction]) -> list[StepAction]:
        return sorted(actions, key=lambda a: a.sequence_order)


class Role(WaypointModel):
    """Named workflow phase owning an ordered set of steps."""

    id: str
    name: str = ""
    display_name: str = ""
    description: str = ""
    priority: int = 0
    capabilities: dict[str, Any] = Field(default_factory=dict)
    steps: list[WorkflowStep] = Field(default_factory=list)

    @model_validator(mode="after")
    def _bind_steps(self) -> "Role":
        if not self.name:
            self.name = self.id
        if not self.display_name:
            self.display_name = self.name.replace("-", " ").title()
        seen: set[int] = set()
        for step in self.steps:
            if step.sequence_number in seen:
                raise ValueError(
                    f"duplicate sequence number {step.sequence_number} in role '{self.id}'"
                )
            seen.add(step.sequence_number)
            step.role_id = self.id
            if not step.id:
                step.id = f"{self.id}.{step.name}"
            if not step.display_name:
                step.display_name = step.name.replace("_", " ").capitalize()
            for condition in step.conditions:
                if not condition.id:
                    condition.id = f"{step.id}.{condition.name}"
        self.steps.sort(key=lambda s: s.sequence_number)
        return self


class TransitionConditions(WaypointModel):
    required_steps_completed: list[str] = Field(default_factory=list)
    all_required_steps_completed: bool = False
    required_task_status: Optional[str] = None
    minimum_time_in_role: Optional[int] = None


class TransitionRequirements(WaypointModel):
    required_deliverables: list[str] = Field(default_factory=list)
    quality_gates: list[str] = Field(default_factory=list)


class RoleTransition(WaypointModel):
    """Catalog-declared edge between two roles."""

    id: str = ""
    transition_name: str = ""
    from_role_id: str
    to_role_id: str
    conditions: TransitionConditions = Field(default_factory=TransitionConditions)
    requirements: TransitionRequirements = Field(default_factory=TransitionRequirements)
    handoff_guidance: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True

    @model_validator(mode="after")
    def _default_names(self) -> "RoleTransition":
        if not self.transition_name:
            self.transition_name = f"{self.from_role_id}_to_{self.to_role_id}"
        if not self.id:
            self.id = self.transition_name
        return self


# ---------------------------------------------------------------------------
# Runtime entities


class Task(WaypointModel):
    """External work item owned by exactly one role at a time."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    owner: Optional[str] = None
    current_role: Optional[str] = None
    redelegation_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class StepProgress(WaypointModel):
    """One attempt of a (task, step, role) triple."""

    id: Optional[int] = None
    task_id: str
    step_id: str
    role_id: str
    status: StepStatus = StepStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_data: dict[str, Any] = Field(default_factory=dict)
    error_details: Optional[dict[str, Any]] = None


class DelegationRecord(WaypointModel):
    """Append-only record of a role handoff attempt."""

    id: Optional[int] = None
    task_id: str
    from_role: str
    to_role: str
    transition_id: Optional[str] = None
    message: str = ""
    success: bool = True
    delegated_at: datetime = Field(default_factory=utc_now)


class StepMarker(WaypointModel):
    id: str
    name: str
    sequence_number: int
    assigned_at: datetime = Field(default_factory=utc_now)


class CompletedStepMarker(WaypointModel):
    step_id: str
    role_id: str
    completed_at: datetime = Field(default_factory=utc_now)


class ExecutionState(WaypointModel):
    phase: ExecutionPhase = ExecutionPhase.CREATED
    current_context: dict[str, Any] = Field(default_factory=dict)
    progress_markers: list[dict[str, Any]] = Field(default_factory=list)
    last_completed_step: Optional[CompletedStepMarker] = None
    current_step: Optional[StepMarker] = None
    pending_step_id: Optional[str] = None
    blocked_reasons: list[str] = Field(default_factory=list)
    awaiting_transition: bool = False


class WorkflowExecution(WaypointModel):
    """Per-task session tracking the current role, step and completion state."""

    id: str = Field(default_factory=new_id)
    task_id: str
    current_role_id: str
    current_step_id: Optional[str] = None
    execution_state: ExecutionState = Field(default_factory=ExecutionState)
    execution_context: dict[str, Any] = Field(default_factory=dict)
    steps_completed: int = 0
    total_steps: int = 0
    progress_percentage: int = Field(0, ge=0, le=100)
    execution_mode: ExecutionMode = ExecutionMode.GUIDED
    last_error: Optional[dict[str, Any]] = None
    recovery_attempts: int = 0
    max_recovery_attempts: int = 3
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def phase(self) -> ExecutionPhase:
        return self.execution_state.phase

    @property
    def is_active(self) -> bool:
        return self.completed_at is None


class ExecutionContext(WaypointModel):
    """Context handed to condition evaluation and guidance generation."""

    task_id: str
    role_id: str
    step_id: Optional[str] = None
    project_path: Optional[str] = None
    execution_data: dict[str, Any] = Field(default_factory=dict)

    def as_lookup(self) -> dict[str, Any]:
        """Return the context as a mapping addressable by either key style."""
        lookup = self.model_dump(mode="json", by_alias=True)
        lookup.update(self.model_dump(mode="json"))
        return lookup


__all__ = [
    "TaskStatus",
    "StepStatus",
    "ExecutionMode",
    "ExecutionPhase",
    "TERMINAL_PHASES",
    "StepAction",
    "PatternEnforcement",
    "WorkflowStep",
    "Role",
    "TransitionConditions",
    "TransitionRequirements",
    "RoleTransition",
    "Task",
    "StepProgress",
    "DelegationRecord",
    "StepMarker",
    "CompletedStepMarker",
    "ExecutionState",
    "WorkflowExecution",
    "ExecutionContext",
    "utc_now",
    "new_id",
]
