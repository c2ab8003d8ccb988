"""SQLModel implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import delete, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, col, select

from ..errors import (
    ConcurrentModificationError,
    StepAlreadyInProgressError,
    StorageError,
)
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
from .tables import (
    DelegationRow,
    ExecutionRow,
    RoleRow,
    StepProgressRow,
    StepRow,
    TaskRow,
    TransitionRow,
)

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _task_from_row(row: TaskRow) -> Task:
    return Task(
        id=row.id,
        name=row.name,
        status=row.status,
        owner=row.owner,
        current_role=row.current_role,
        redelegation_count=row.redelegation_count,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _progress_from_row(row: StepProgressRow) -> StepProgress:
    return StepProgress(
        id=row.id,
        task_id=row.task_id,
        step_id=row.step_id,
        role_id=row.role_id,
        status=StepStatus(row.status),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        execution_data=row.execution_data or {},
        error_details=row.error_details,
    )


def _execution_from_row(row: ExecutionRow) -> WorkflowExecution:
    execution = WorkflowExecution.model_validate(row.document)
    execution.version = row.version
    return execution


def _delegation_from_row(row: DelegationRow) -> DelegationRecord:
    return DelegationRecord(
        id=row.id,
        task_id=row.task_id,
        from_role=row.from_role,
        to_role=row.to_role,
        transition_id=row.transition_id,
        message=row.message,
        success=row.success,
        delegated_at=_aware(row.delegated_at),
    )


class SQLModelWorkflowRepository(WorkflowRepository):
    """Persist workflow state through SQLModel tables on an async engine.

    Works with ``sqlite+aiosqlite://`` and ``postgresql+asyncpg://`` URLs.
    Tables are created lazily on first use.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        connect_args: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.database_url = database_url
        self.engine = create_async_engine(
            database_url, echo=echo, future=True, connect_args=connect_args
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def init_db(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._initialized = True

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    # ------------------------------------------------------------------
    async def create_task(self, task: Task) -> Task:
        row = TaskRow(
            id=task.id,
            name=task.name,
            status=task.status.value,
            owner=task.owner,
            current_role=task.current_role,
            redelegation_count=task.redelegation_count,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )
        async with self.session() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return _task_from_row(row)

    async def get_task(self, task_id: str) -> Task | None:
        async with self.session() as session:
            row = await session.get(TaskRow, task_id)
            return _task_from_row(row) if row else None

    async def save_task(self, task: Task) -> Task:
        async with self.session() as session:
            row = await session.get(TaskRow, task.id)
            if row is None:
                row = TaskRow(id=task.id, created_at=task.created_at)
                session.add(row)
            row.name = task.name
            row.status = task.status.value
            row.owner = task.owner
            row.current_role = task.current_role
            row.redelegation_count = task.redelegation_count
            row.updated_at = utc_now()
            await session.commit()
            await session.refresh(row)
        return _task_from_row(row)

    # ------------------------------------------------------------------
    async def save_catalog(
        self, roles: list[Role], transitions: list[RoleTransition]
    ) -> None:
        async with self.session() as session:
            await session.execute(delete(StepRow))
            await session.execute(delete(RoleRow))
            await session.execute(delete(TransitionRow))
            for role in roles:
                session.add(
                    RoleRow(
                        id=role.id,
                        priority=role.priority,
                        definition=role.model_dump(mode="json", exclude={"steps"}),
                    )
                )
                for step in role.steps:
                    session.add(
                        StepRow(
                            id=step.id,
                            role_id=role.id,
                            sequence_number=step.sequence_number,
                            definition=step.model_dump(mode="json"),
                        )
                    )
            for transition in transitions:
                session.add(
                    TransitionRow(
                        id=transition.id,
                        from_role_id=transition.from_role_id,
                        definition=transition.model_dump(mode="json"),
                    )
                )
            await session.commit()
        logger.info(
            f"Stored catalog with {len(roles)} roles and {len(transitions)} transitions"
        )

    async def _load_role(self, session: AsyncSession, row: RoleRow) -> Role:
        result = await session.execute(
            select(StepRow)
            .where(col(StepRow.role_id) == row.id)
            .order_by(col(StepRow.sequence_number))
        )
        steps = [step.definition for step in result.scalars().all()]
        return Role.model_validate({**row.definition, "steps": steps})

    async def list_roles(self) -> list[Role]:
        async with self.session() as session:
            result = await session.execute(
                select(RoleRow).order_by(col(RoleRow.priority), col(RoleRow.id))
            )
            return [await self._load_role(session, row) for row in result.scalars().all()]

    async def get_role(self, role_id: str) -> Role | None:
        async with self.session() as session:
            row = await session.get(RoleRow, role_id)
            return await self._load_role(session, row) if row else None

    async def list_steps(self, role_id: Optional[str] = None) -> list[WorkflowStep]:
        steps: list[WorkflowStep] = []
        for role in await self.list_roles():
            if role_id is None or role.id == role_id:
                steps.extend(role.steps)
        return steps

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        async with self.session() as session:
            row = await session.get(StepRow, step_id)
            if row is None:
                return None
            step = WorkflowStep.model_validate(row.definition)
            step.role_id = row.role_id
            return step

    async def list_transitions(
        self, from_role_id: Optional[str] = None
    ) -> list[RoleTransition]:
        statement = select(TransitionRow).order_by(col(TransitionRow.id))
        if from_role_id is not None:
            statement = statement.where(col(TransitionRow.from_role_id) == from_role_id)
        async with self.session() as session:
            result = await session.execute(statement)
            return [
                RoleTransition.model_validate(row.definition)
                for row in result.scalars().all()
            ]

    async def get_transition(self, transition_id: str) -> RoleTransition | None:
        async with self.session() as session:
            row = await session.get(TransitionRow, transition_id)
            return RoleTransition.model_validate(row.definition) if row else None

    # ------------------------------------------------------------------
    def _open_attempt_query(self, task_id: str, step_id: str, role_id: str):
        return (
            select(StepProgressRow)
            .where(
                col(StepProgressRow.task_id) == task_id,
                col(StepProgressRow.step_id) == step_id,
                col(StepProgressRow.role_id) == role_id,
                col(StepProgressRow.status) == StepStatus.IN_PROGRESS.value,
            )
            .order_by(col(StepProgressRow.id).desc())
        )

    async def start_step_progress(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        execution_data: dict | None = None,
    ) -> StepProgress:
        row = StepProgressRow(
            task_id=task_id,
            step_id=step_id,
            role_id=role_id,
            status=StepStatus.IN_PROGRESS.value,
            started_at=utc_now(),
            execution_data=execution_data or {},
        )
        async with self.session() as session:
            result = await session.execute(
                self._open_attempt_query(task_id, step_id, role_id)
            )
            if result.scalars().first() is not None:
                raise StepAlreadyInProgressError(task_id, step_id, role_id)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise StepAlreadyInProgressError(task_id, step_id, role_id) from exc
            await session.refresh(row)
        return _progress_from_row(row)

    async def finish_step_progress(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        status: StepStatus,
        execution_data: dict | None = None,
        error_details: dict | None = None,
    ) -> StepProgress:
        now = utc_now()
        async with self.session() as session:
            result = await session.execute(
                self._open_attempt_query(task_id, step_id, role_id)
            )
            row = result.scalars().first()
            if row is None:
                row = StepProgressRow(
                    task_id=task_id,
                    step_id=step_id,
                    role_id=role_id,
                    started_at=now,
                    execution_data={},
                )
                session.add(row)
            row.status = status.value
            row.completed_at = now
            if execution_data:
                row.execution_data = dict(execution_data)
            row.error_details = error_details
            await session.commit()
            await session.refresh(row)
        return _progress_from_row(row)

    async def list_step_progress(
        self,
        task_id: str,
        role_id: Optional[str] = None,
        step_id: Optional[str] = None,
        status: Optional[StepStatus] = None,
    ) -> list[StepProgress]:
        statement = select(StepProgressRow).where(
            col(StepProgressRow.task_id) == task_id
        )
        if role_id is not None:
            statement = statement.where(col(StepProgressRow.role_id) == role_id)
        if step_id is not None:
            statement = statement.where(col(StepProgressRow.step_id) == step_id)
        if status is not None:
            statement = statement.where(col(StepProgressRow.status) == status.value)
        async with self.session() as session:
            result = await session.execute(statement.order_by(col(StepProgressRow.id)))
            return [_progress_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        row = ExecutionRow(
            id=execution.id,
            task_id=execution.task_id,
            version=execution.version,
            created_at=execution.created_at,
            completed_at=execution.completed_at,
            document=execution.model_dump(mode="json"),
        )
        async with self.session() as session:
            session.add(row)
            await session.commit()
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        async with self.session() as session:
            row = await session.get(ExecutionRow, execution_id)
            return _execution_from_row(row) if row else None

    async def get_execution_for_task(self, task_id: str) -> WorkflowExecution | None:
        async with self.session() as session:
            result = await session.execute(
                select(ExecutionRow)
                .where(col(ExecutionRow.task_id) == task_id)
                .order_by(col(ExecutionRow.created_at).desc())
            )
            row = result.scalars().first()
            return _execution_from_row(row) if row else None

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        stored = execution.model_copy(deep=True)
        stored.version = expected_version + 1
        stored.updated_at = utc_now()
        statement = (
            update(ExecutionRow)
            .where(
                col(ExecutionRow.id) == execution.id,
                col(ExecutionRow.version) == expected_version,
            )
            .values(
                version=stored.version,
                completed_at=stored.completed_at,
                document=stored.model_dump(mode="json"),
            )
        )
        async with self.session() as session:
            try:
                result = await session.execute(statement)
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(f"Failed to save execution {execution.id}: {exc}")
                raise StorageError(f"Failed to save execution {execution.id}") from exc
            if result.rowcount != 1:
                await session.rollback()
                raise ConcurrentModificationError(execution.id, expected_version)
            await session.commit()
        return stored

    async def list_executions(self, active_only: bool = False) -> list[WorkflowExecution]:
        statement = select(ExecutionRow).order_by(col(ExecutionRow.created_at).desc())
        if active_only:
            statement = statement.where(col(ExecutionRow.completed_at).is_(None))
        async with self.session() as session:
            result = await session.execute(statement)
            return [_execution_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    @staticmethod
    def _delegation_row(record: DelegationRecord) -> DelegationRow:
        return DelegationRow(
            task_id=record.task_id,
            from_role=record.from_role,
            to_role=record.to_role,
            transition_id=record.transition_id,
            message=record.message,
            success=record.success,
            delegated_at=record.delegated_at,
        )

    async def add_delegation(self, record: DelegationRecord) -> DelegationRecord:
        row = self._delegation_row(record)
        async with self.session() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return _delegation_from_row(row)

    async def record_handoff(self, task: Task, record: DelegationRecord) -> DelegationRecord:
        row = self._delegation_row(record)
        async with self.session() as session:
            try:
                task_row = await session.get(TaskRow, task.id)
                if task_row is None:
                    raise StorageError(f"Task {task.id} does not exist")
                task_row.owner = task.owner
                task_row.current_role = task.current_role
                task_row.status = task.status.value
                task_row.redelegation_count = task.redelegation_count
                task_row.updated_at = utc_now()
                session.add(row)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(f"Failed to record handoff for task {task.id}: {exc}")
                raise StorageError(f"Failed to record handoff for task {task.id}") from exc
            await session.refresh(row)
        return _delegation_from_row(row)

    async def list_delegations(self, task_id: str) -> list[DelegationRecord]:
        async with self.session() as session:
            result = await session.execute(
                select(DelegationRow)
                .where(col(DelegationRow.task_id) == task_id)
                .order_by(col(DelegationRow.id).desc())
            )
            return [_delegation_from_row(row) for row in result.scalars().all()]

    async def run_readonly_query(
        self, query: str, parameters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(text(query), parameters)
            rows = [dict(row._mapping) for row in result.fetchall()]
            await session.rollback()
        return rows
