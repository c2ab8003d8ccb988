"""Per-task step attempt tracking."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from ..errors import StepAlreadyInProgressError, StorageError
from ..models import StepProgress, StepStatus
from ..persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class StepResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class StepProgressTracker:
    """Moves step attempts NOT_STARTED -> IN_PROGRESS -> COMPLETED | FAILED.

    Rows are append-only. Writes that fail surface as ``StorageError``;
    reads degrade to empty results.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def start_step(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        execution_data: Optional[dict[str, Any]] = None,
    ) -> StepProgress:
        """Open a new attempt.

        Raises:
            StepAlreadyInProgressError: if an attempt is already open.
            StorageError: if the row could not be written.
        """
        try:
            row = await self.repository.start_step_progress(
                task_id, step_id, role_id, execution_data
            )
        except StepAlreadyInProgressError:
            raise
        except Exception as exc:
            logger.error(f"Failed to start step {step_id} for task {task_id}: {exc}")
            raise StorageError(f"Failed to record start of step '{step_id}'") from exc
        logger.debug(f"Step {step_id} started for task {task_id} as {role_id}")
        return row

    async def ensure_started(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        execution_data: Optional[dict[str, Any]] = None,
    ) -> StepProgress:
        """Return the open attempt, starting one if there is none."""
        current = await self.current_attempt(task_id, step_id, role_id)
        if current is not None:
            return current
        try:
            return await self.start_step(task_id, step_id, role_id, execution_data)
        except StepAlreadyInProgressError:
            current = await self.current_attempt(task_id, step_id, role_id)
            if current is None:
                raise
            return current

    async def complete_step(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        result: StepResult | str,
        execution_data: Optional[dict[str, Any]] = None,
        error_details: Optional[dict[str, Any]] = None,
    ) -> StepProgress:
        """Close the open attempt as COMPLETED or FAILED."""
        outcome = StepResult(result)
        status = (
            StepStatus.COMPLETED if outcome is StepResult.SUCCESS else StepStatus.FAILED
        )
        try:
            row = await self.repository.finish_step_progress(
                task_id,
                step_id,
                role_id,
                status,
                execution_data=execution_data,
                error_details=error_details,
            )
        except Exception as exc:
            logger.error(f"Failed to record {outcome.value} of step {step_id}: {exc}")
            raise StorageError(
                f"Failed to record {outcome.value} of step '{step_id}'"
            ) from exc
        logger.info(f"Step {step_id} for task {task_id} finished: {status.value}")
        return row

    async def history(
        self,
        task_id: str,
        role_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> list[StepProgress]:
        try:
            return await self.repository.list_step_progress(
                task_id, role_id=role_id, step_id=step_id
            )
        except Exception as exc:
            logger.warning(f"Failed to read step progress for task {task_id}: {exc}")
            return []

    async def completed_step_ids(
        self, task_id: str, role_id: Optional[str] = None
    ) -> list[str]:
        rows = await self.history(task_id, role_id=role_id)
        return list(
            dict.fromkeys(r.step_id for r in rows if r.status == StepStatus.COMPLETED)
        )

    async def current_attempt(
        self, task_id: str, step_id: str, role_id: str
    ) -> StepProgress | None:
        rows = await self.history(task_id, role_id=role_id, step_id=step_id)
        for row in reversed(rows):
            if row.status == StepStatus.IN_PROGRESS:
                return row
        return None
