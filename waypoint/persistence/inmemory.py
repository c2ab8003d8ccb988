"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from ..errors import ConcurrentModificationError, StepAlreadyInProgressError, StorageError
from ..models import (
    DelegationRecord,
    Role,
    RoleTransition,
    StepProgress,
    StepStatus,
    Task,
    WorkflowExecution,
    WorkflowStep,
    utc_now,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every read returns a deep copy so
    callers cannot mutate stored state behind the repository's back.
    Database query conditions need a SQL backend and always fail here.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._roles: Dict[str, Role] = {}
        self._transitions: Dict[str, RoleTransition] = {}
        self._progress: list[StepProgress] = []
        self._executions: Dict[str, WorkflowExecution] = {}
        self._delegations: list[DelegationRecord] = []
        self._progress_id = 0
        self._delegation_id = 0
        self._progress_lock = asyncio.Lock()
        self._execution_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_task(self, task: Task) -> Task:
        self._tasks[task.id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def save_task(self, task: Task) -> Task:
        stored = task.model_copy(deep=True)
        stored.updated_at = utc_now()
        self._tasks[task.id] = stored
        return stored.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def save_catalog(
        self, roles: list[Role], transitions: list[RoleTransition]
    ) -> None:
        self._roles = {role.id: role.model_copy(deep=True) for role in roles}
        self._transitions = {t.id: t.model_copy(deep=True) for t in transitions}

    async def list_roles(self) -> list[Role]:
        roles = sorted(self._roles.values(), key=lambda r: (r.priority, r.id))
        return [role.model_copy(deep=True) for role in roles]

    async def get_role(self, role_id: str) -> Role | None:
        role = self._roles.get(role_id)
        return role.model_copy(deep=True) if role else None

    async def list_steps(self, role_id: Optional[str] = None) -> list[WorkflowStep]:
        steps: list[WorkflowStep] = []
        for role in await self.list_roles():
            if role_id is None or role.id == role_id:
                steps.extend(role.steps)
        return steps

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        for role in self._roles.values():
            for step in role.steps:
                if step.id == step_id:
                    return step.model_copy(deep=True)
        return None

    async def list_transitions(
        self, from_role_id: Optional[str] = None
    ) -> list[RoleTransition]:
        return [
            t.model_copy(deep=True)
            for t in self._transitions.values()
            if from_role_id is None or t.from_role_id == from_role_id
        ]

    async def get_transition(self, transition_id: str) -> RoleTransition | None:
        transition = self._transitions.get(transition_id)
        return transition.model_copy(deep=True) if transition else None

    # ------------------------------------------------------------------
    def _open_attempt(
        self, task_id: str, step_id: str, role_id: str
    ) -> StepProgress | None:
        for row in self._progress:
            if (
                row.task_id == task_id
                and row.step_id == step_id
                and row.role_id == role_id
                and row.status == StepStatus.IN_PROGRESS
            ):
                return row
        return None

    async def start_step_progress(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        execution_data: dict | None = None,
    ) -> StepProgress:
        async with self._progress_lock:
            if self._open_attempt(task_id, step_id, role_id) is not None:
                raise StepAlreadyInProgressError(task_id, step_id, role_id)
            self._progress_id += 1
            row = StepProgress(
                id=self._progress_id,
                task_id=task_id,
                step_id=step_id,
                role_id=role_id,
                status=StepStatus.IN_PROGRESS,
                started_at=utc_now(),
                execution_data=execution_data or {},
            )
            self._progress.append(row)
            return row.model_copy(deep=True)

    async def finish_step_progress(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        status: StepStatus,
        execution_data: dict | None = None,
        error_details: dict | None = None,
    ) -> StepProgress:
        async with self._progress_lock:
            now = utc_now()
            row = self._open_attempt(task_id, step_id, role_id)
            if row is None:
                self._progress_id += 1
                row = StepProgress(
                    id=self._progress_id,
                    task_id=task_id,
                    step_id=step_id,
                    role_id=role_id,
                    started_at=now,
                )
                self._progress.append(row)
            row.status = status
            row.completed_at = now
            row.execution_data = execution_data or row.execution_data
            row.error_details = error_details
            return row.model_copy(deep=True)

    async def list_step_progress(
        self,
        task_id: str,
        role_id: Optional[str] = None,
        step_id: Optional[str] = None,
        status: Optional[StepStatus] = None,
    ) -> list[StepProgress]:
        return [
            row.model_copy(deep=True)
            for row in self._progress
            if row.task_id == task_id
            and (role_id is None or row.role_id == role_id)
            and (step_id is None or row.step_id == step_id)
            and (status is None or row.status == status)
        ]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._execution_lock:
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def get_execution_for_task(self, task_id: str) -> WorkflowExecution | None:
        matches = [e for e in self._executions.values() if e.task_id == task_id]
        if not matches:
            return None
        latest = max(matches, key=lambda e: e.created_at)
        return latest.model_copy(deep=True)

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        async with self._execution_lock:
            current = self._executions.get(execution.id)
            if current is None or current.version != expected_version:
                raise ConcurrentModificationError(execution.id, expected_version)
            stored = execution.model_copy(deep=True)
            stored.version = expected_version + 1
            stored.updated_at = utc_now()
            self._executions[execution.id] = stored
            return stored.model_copy(deep=True)

    async def list_executions(self, active_only: bool = False) -> list[WorkflowExecution]:
        executions = sorted(
            self._executions.values(), key=lambda e: e.created_at, reverse=True
        )
        return [
            e.model_copy(deep=True)
            for e in executions
            if not active_only or e.completed_at is None
        ]

    # ------------------------------------------------------------------
    async def add_delegation(self, record: DelegationRecord) -> DelegationRecord:
        self._delegation_id += 1
        stored = record.model_copy(update={"id": self._delegation_id}, deep=True)
        self._delegations.append(stored)
        return stored.model_copy(deep=True)

    async def list_delegations(self, task_id: str) -> list[DelegationRecord]:
        records = [r for r in self._delegations if r.task_id == task_id]
        return [r.model_copy(deep=True) for r in reversed(records)]

    async def record_handoff(self, task: Task, record: DelegationRecord) -> DelegationRecord:
        if task.id not in self._tasks:
            raise StorageError(f"Task {task.id} does not exist")
        stored_task = task.model_copy(deep=True)
        stored_task.updated_at = utc_now()
        self._delegation_id += 1
        stored = record.model_copy(update={"id": self._delegation_id}, deep=True)
        self._tasks[task.id] = stored_task
        self._delegations.append(stored)
        return stored.model_copy(deep=True)

    async def run_readonly_query(
        self, query: str, parameters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        raise StorageError(
            "The in-memory repository cannot run SQL; configure database_url "
            "to use database query conditions"
        )
