"""Repository abstraction for catalog and execution state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..models import (
    DelegationRecord,
    Role,
    RoleTransition,
    StepProgress,
    StepStatus,
    Task,
    WorkflowExecution,
    WorkflowStep,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    # -- tasks ---------------------------------------------------------
    async def create_task(self, task: Task) -> Task:
        """Persist a new task."""

    async def get_task(self, task_id: str) -> Task | None:
        """Retrieve a task by id."""

    async def save_task(self, task: Task) -> Task:
        """Persist changes to an existing task."""

    # -- catalog -------------------------------------------------------
    async def save_catalog(
        self, roles: list[Role], transitions: list[RoleTransition]
    ) -> None:
        """Replace the stored catalog."""

    async def list_roles(self) -> list[Role]:
        """Return all roles ordered by priority, steps included."""

    async def get_role(self, role_id: str) -> Role | None:
        """Retrieve a role by id."""

    async def list_steps(self, role_id: Optional[str] = None) -> list[WorkflowStep]:
        """Return steps ordered by role and sequence number."""

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        """Retrieve a step by id."""

    async def list_transitions(
        self, from_role_id: Optional[str] = None
    ) -> list[RoleTransition]:
        """Return transitions, optionally restricted to one source role."""

    async def get_transition(self, transition_id: str) -> RoleTransition | None:
        """Retrieve a transition by id."""

    # -- step progress -------------------------------------------------
    async def start_step_progress(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        execution_data: dict | None = None,
    ) -> StepProgress:
        """Append an IN_PROGRESS row.

        Raises ``StepAlreadyInProgressError`` if one is already open for the
        same (task, step, role).
        """

    async def finish_step_progress(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        status: StepStatus,
        execution_data: dict | None = None,
        error_details: dict | None = None,
    ) -> StepProgress:
        """Close the open attempt, or append a closed one if none is open."""

    async def list_step_progress(
        self,
        task_id: str,
        role_id: Optional[str] = None,
        step_id: Optional[str] = None,
        status: Optional[StepStatus] = None,
    ) -> list[StepProgress]:
        """Return progress rows in insertion order."""

    # -- executions ----------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def get_execution_for_task(self, task_id: str) -> WorkflowExecution | None:
        """Return the most recent execution of a task."""

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        """Compare-and-swap write; bumps ``version``.

        Raises ``ConcurrentModificationError`` when the stored version differs
        from ``expected_version``.
        """

    async def list_executions(self, active_only: bool = False) -> list[WorkflowExecution]:
        """Return executions, newest first."""

    # -- delegation history --------------------------------------------
    async def add_delegation(self, record: DelegationRecord) -> DelegationRecord:
        """Append a delegation record."""

    async def list_delegations(self, task_id: str) -> list[DelegationRecord]:
        """Return delegation records for a task, newest first."""

    async def record_handoff(self, task: Task, record: DelegationRecord) -> DelegationRecord:
        """Save ``task`` and append ``record`` atomically: both or neither."""

    # -- read-only queries ---------------------------------------------
    async def run_readonly_query(
        self, query: str, parameters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Execute a SELECT statement with bound parameters.

        Raises ``StorageError`` when the backend cannot run SQL.
        """
