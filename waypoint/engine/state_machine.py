"""Execution state machine.

An execution moves ``created -> bootstrapped -> in-progress`` and ends in
``completed`` or ``failed`` (``paused`` can be entered and left explicitly).
Every change is a read-modify-compare-and-swap on the execution record, so
concurrent calls for one task serialize on its version while calls for other
tasks never wait on each other.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ConfigDict, Field, ValidationError

from ..catalog.service import StepCatalog
from ..conditions import WaypointModel
from ..config import EngineConfig, WaypointConfig
from ..errors import (
    ConcurrentModificationError,
    ExecutionExistsError,
    ExecutionNotFoundError,
    InvalidRequestError,
    RoleNotFoundError,
    StepNotFoundError,
    StorageError,
    WaypointError,
)
from ..models import (
    CompletedStepMarker,
    ExecutionContext,
    ExecutionMode,
    ExecutionPhase,
    ExecutionState,
    RoleTransition,
    StepMarker,
    StepProgress,
    Task,
    TaskStatus,
    TERMINAL_PHASES,
    WorkflowExecution,
    WorkflowStep,
    utc_now,
)
from ..persistence import get_repository
from ..persistence.repository import WorkflowRepository
from ..utils.retry import compute_backoff
from .cache import ContextCache
from .evaluator import ConditionEvaluator, resolve_path
from .guidance import GuidanceGenerator, WorkflowGuidance
from .progress import StepProgressTracker, StepResult
from .transitions import RecommendedTransition, RoleTransitionEngine, TransitionResult
from .workers import BlockingIOPool

logger = logging.getLogger(__name__)

Mutator = Callable[[WorkflowExecution], Union[None, Awaitable[None]]]


class ExecutionUpdate(WaypointModel):
    """Fields a caller may change directly on an execution."""

    model_config = ConfigDict(extra="forbid")

    current_step_id: Optional[str] = None
    execution_mode: Optional[ExecutionMode] = None
    execution_context: Optional[dict[str, Any]] = None
    max_recovery_attempts: Optional[int] = Field(None, ge=1)
    progress_percentage: Optional[int] = Field(None, ge=0, le=100)


class GuidanceResponse(WaypointModel):
    status: ExecutionPhase
    execution: WorkflowExecution
    guidance: Optional[WorkflowGuidance] = None
    recommended_transitions: list[RecommendedTransition] = Field(default_factory=list)
    blocked_reasons: list[str] = Field(default_factory=list)
    error: Optional[dict[str, Any]] = None


class StepReport(WaypointModel):
    execution: WorkflowExecution
    progress: StepProgress
    next_step_id: Optional[str] = None
    awaiting_transition: bool = False
    transition: Optional[TransitionResult] = None


class TransitionOutcome(WaypointModel):
    result: TransitionResult
    execution: WorkflowExecution


def _marker(step: WorkflowStep) -> StepMarker:
    return StepMarker(id=step.id, name=step.name, sequence_number=step.sequence_number)


def _context_size(context: dict[str, Any]) -> int:
    return len(json.dumps(context, default=str).encode("utf-8"))


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ExecutionStateMachine:
    """Drives one execution per task through roles and steps."""

    def __init__(
        self,
        repository: WorkflowRepository,
        catalog: StepCatalog,
        progress: StepProgressTracker,
        evaluator: ConditionEvaluator,
        transitions: RoleTransitionEngine,
        guidance: GuidanceGenerator,
        cache: ContextCache,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.progress = progress
        self.evaluator = evaluator
        self.transitions = transitions
        self.guidance = guidance
        self.cache = cache
        self.config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _load(self, execution_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def _for_task(self, task_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution_for_task(task_id)
        if execution is None:
            raise ExecutionNotFoundError(f"task {task_id}")
        return execution

    def _backoff(self, attempt: int) -> float:
        return compute_backoff(attempt, scale=self.config.cas_backoff_base)

    async def _mutate(self, execution_id: str, mutator: Mutator) -> WorkflowExecution:
        """Apply ``mutator`` to a fresh copy and compare-and-swap it back.

        The mutator may run more than once when writers collide, so it must
        only change the execution it is given.
        """
        attempt = 0
        while True:
            execution = await self._load(execution_id)
            expected = execution.version
            outcome = mutator(execution)
            if inspect.isawaitable(outcome):
                await outcome
            try:
                return await self.repository.save_execution(execution, expected)
            except ConcurrentModificationError:
                if attempt >= self.config.cas_retries:
                    logger.error(
                        f"Giving up on execution {execution_id} after {attempt + 1} conflicts"
                    )
                    raise
                delay = self._backoff(attempt)
                logger.debug(
                    f"Execution {execution_id} changed concurrently, retrying in {delay:.3f}s"
                )
                attempt += 1
                await asyncio.sleep(delay)
            except WaypointError:
                raise
            except Exception as exc:
                logger.error(f"Failed to save execution {execution_id}: {exc}")
                raise StorageError(f"Failed to save execution {execution_id}") from exc

    def _context(
        self,
        execution: WorkflowExecution,
        role_id: Optional[str] = None,
        step_id: Optional[str] = None,
        project_path: Optional[str] = None,
    ) -> ExecutionContext:
        data = execution.execution_context
        return ExecutionContext(
            task_id=execution.task_id,
            role_id=role_id or execution.current_role_id,
            step_id=step_id,
            project_path=project_path or data.get("projectPath") or data.get("project_path"),
            execution_data=data,
        )

    def _check_context_size(self, context: dict[str, Any]) -> None:
        size = _context_size(context)
        if size > self.config.max_context_size:
            raise InvalidRequestError(
                f"Execution context is {size} bytes, limit is {self.config.max_context_size}"
            )

    async def _required_conditions_pass(
        self, step: WorkflowStep, context: ExecutionContext
    ) -> list[str]:
        step_context = context.model_copy(update={"step_id": step.id})
        summary = await self.evaluator.validate_all(step.conditions, step_context)
        return summary.errors

    @staticmethod
    def _record_failure(
        execution: WorkflowExecution, code: str, message: str, **details: Any
    ) -> None:
        execution.recovery_attempts += 1
        execution.last_error = {
            "code": code,
            "message": message,
            "occurredAt": utc_now().isoformat(),
            "recoveryAttempts": execution.recovery_attempts,
            **details,
        }
        if execution.recovery_attempts >= execution.max_recovery_attempts:
            execution.execution_state.phase = ExecutionPhase.FAILED
            logger.warning(
                f"Execution {execution.id} failed after "
                f"{execution.recovery_attempts} attempts: {message}"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    async def create_execution(
        self,
        role_id: str,
        execution_mode: Optional[Union[ExecutionMode, str]] = None,
        task_id: Optional[str] = None,
        execution_context: Optional[dict[str, Any]] = None,
        task_name: Optional[str] = None,
    ) -> WorkflowExecution:
        role = await self.catalog.get_role(role_id)
        if role is None:
            raise RoleNotFoundError(role_id)
        try:
            mode = ExecutionMode(execution_mode or self.config.default_execution_mode)
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown execution mode '{execution_mode}'") from exc
        context = dict(execution_context or {})
        self._check_context_size(context)

        task = await self.repository.get_task(task_id) if task_id else None
        if task is None:
            task = Task(
                name=task_name or f"{role.display_name} task",
                status=TaskStatus.IN_PROGRESS,
                owner=role.id,
                current_role=role.id,
            )
            if task_id:
                task.id = task_id
            task = await self.repository.create_task(task)
            logger.info(f"Created task {task.id} for role {role.id}")
        else:
            existing = await self.repository.get_execution_for_task(task.id)
            if existing is not None and existing.is_active:
                raise ExecutionExistsError(
                    f"Task {task.id} already has active execution {existing.id}"
                )
            task.owner = role.id
            task.current_role = role.id
            if task.status == TaskStatus.NOT_STARTED:
                task.status = TaskStatus.IN_PROGRESS
            task = await self.repository.save_task(task)

        first = await self.catalog.next_available(role.id, task.id)
        completed = await self.progress.completed_step_ids(task.id)
        total = await self.catalog.count_steps()
        state = ExecutionState(
            phase=ExecutionPhase.BOOTSTRAPPED,
            current_context={"taskId": task.id, "roleId": role.id},
            current_step=_marker(first) if first else None,
            awaiting_transition=first is None,
        )
        execution = WorkflowExecution(
            task_id=task.id,
            current_role_id=role.id,
            current_step_id=first.id if first else None,
            execution_state=state,
            execution_context=context,
            steps_completed=len(completed),
            total_steps=total,
            progress_percentage=min(100, len(completed) * 100 // total) if total else 0,
            execution_mode=mode,
            max_recovery_attempts=self.config.max_recovery_attempts,
        )
        execution = await self.repository.create_execution(execution)
        logger.info(
            f"Execution {execution.id} created for task {task.id} in role {role.id} ({mode.value})"
        )
        return execution

    async def get_execution(self, reference: str) -> WorkflowExecution:
        """Look up an execution by its id or by its task id."""
        execution = await self.repository.get_execution(reference)
        if execution is None:
            execution = await self.repository.get_execution_for_task(reference)
        if execution is None:
            raise ExecutionNotFoundError(reference)
        return execution

    async def get_execution_for_task(self, task_id: str) -> WorkflowExecution:
        return await self._for_task(task_id)

    async def get_active_executions(self) -> list[WorkflowExecution]:
        return await self.repository.list_executions(active_only=True)

    async def update_execution(
        self, execution_id: str, update_data: Union[ExecutionUpdate, dict[str, Any]]
    ) -> WorkflowExecution:
        if not isinstance(update_data, ExecutionUpdate):
            try:
                update_data = ExecutionUpdate.model_validate(update_data)
            except ValidationError as exc:
                raise InvalidRequestError(f"Invalid execution update: {exc}") from exc
        changes = update_data.model_dump(exclude_unset=True)
        if "execution_context" in changes:
            self._check_context_size(changes["execution_context"] or {})
        step: Optional[WorkflowStep] = None
        if changes.get("current_step_id"):
            details = await self.catalog.get_step(changes["current_step_id"])
            if details is None:
                raise StepNotFoundError(changes["current_step_id"])
            step = details.step

        def apply(execution: WorkflowExecution) -> None:
            if execution.phase in TERMINAL_PHASES:
                raise InvalidRequestError(
                    f"Execution {execution.id} is {execution.phase.value}"
                )
            if step is not None:
                if step.role_id != execution.current_role_id:
                    raise InvalidRequestError(
                        f"Step '{step.id}' does not belong to role '{execution.current_role_id}'"
                    )
                execution.current_step_id = step.id
                execution.execution_state.current_step = _marker(step)
                execution.execution_state.pending_step_id = None
                execution.execution_state.blocked_reasons = []
            if update_data.execution_mode is not None:
                execution.execution_mode = update_data.execution_mode
            if "execution_context" in changes:
                execution.execution_context = dict(update_data.execution_context or {})
            if update_data.max_recovery_attempts is not None:
                execution.max_recovery_attempts = update_data.max_recovery_attempts
            if update_data.progress_percentage is not None:
                execution.progress_percentage = max(
                    execution.progress_percentage, update_data.progress_percentage
                )

        return await self._mutate(execution_id, apply)

    async def complete_execution(self, execution_id: str) -> WorkflowExecution:
        def apply(execution: WorkflowExecution) -> None:
            if execution.phase == ExecutionPhase.COMPLETED:
                return
            execution.execution_state.phase = ExecutionPhase.COMPLETED
            execution.execution_state.awaiting_transition = False
            execution.execution_state.pending_step_id = None
            execution.completed_at = utc_now()
            execution.progress_percentage = 100

        execution = await self._mutate(execution_id, apply)
        task = await self.repository.get_task(execution.task_id)
        if task is not None and task.status != TaskStatus.COMPLETED:
            task.status = TaskStatus.COMPLETED
            await self.repository.save_task(task)
        self.cache.invalidate(execution.task_id)
        logger.info(f"Execution {execution.id} completed")
        return execution

    async def pause_execution(self, execution_id: str) -> WorkflowExecution:
        def apply(execution: WorkflowExecution) -> None:
            if execution.phase in TERMINAL_PHASES:
                raise InvalidRequestError(
                    f"Execution {execution.id} is {execution.phase.value}"
                )
            execution.execution_state.phase = ExecutionPhase.PAUSED

        return await self._mutate(execution_id, apply)

    async def resume_execution(self, execution_id: str) -> WorkflowExecution:
        """Explicit intervention: leave PAUSED or FAILED and reset recovery."""

        def apply(execution: WorkflowExecution) -> None:
            if execution.phase not in (ExecutionPhase.PAUSED, ExecutionPhase.FAILED):
                raise InvalidRequestError(
                    f"Execution {execution.id} is {execution.phase.value}, not paused or failed"
                )
            execution.execution_state.phase = ExecutionPhase.IN_PROGRESS
            execution.recovery_attempts = 0
            execution.last_error = None

        execution = await self._mutate(execution_id, apply)
        logger.info(f"Execution {execution.id} resumed")
        return execution

    async def get_execution_context(
        self, execution_id: str, data_key: Optional[str] = None
    ) -> Any:
        execution = await self.get_execution(execution_id)
        if data_key is None:
            return execution.execution_context
        return resolve_path(execution.execution_context, data_key)

    async def update_execution_context(
        self, execution_id: str, updates: dict[str, Any]
    ) -> WorkflowExecution:
        def apply(execution: WorkflowExecution) -> None:
            merged = _deep_merge(execution.execution_context, updates)
            self._check_context_size(merged)
            execution.execution_context = merged

        return await self._mutate(execution_id, apply)

    # ------------------------------------------------------------------
    # Guidance
    async def get_guidance(
        self,
        task_id: str,
        role_id: Optional[str] = None,
        step_id: Optional[str] = None,
        project_path: Optional[str] = None,
    ) -> GuidanceResponse:
        execution = await self._for_task(task_id)
        if execution.phase == ExecutionPhase.FAILED:
            return GuidanceResponse(
                status=execution.phase,
                execution=execution,
                error=execution.last_error,
            )
        if execution.phase in (ExecutionPhase.COMPLETED, ExecutionPhase.PAUSED):
            return GuidanceResponse(status=execution.phase, execution=execution)

        role_id = role_id or execution.current_role_id
        if await self.catalog.get_role(role_id) is None:
            raise RoleNotFoundError(role_id)
        is_current_role = role_id == execution.current_role_id
        if is_current_role:
            execution = await self._promote_pending(execution, project_path)

        shown_step = (
            step_id
            or (execution.current_step_id if is_current_role else None)
            or (execution.execution_state.pending_step_id if is_current_role else None)
        )
        if (
            is_current_role
            and shown_step is not None
            and shown_step == execution.current_step_id
        ):
            await self.progress.ensure_started(
                task_id, shown_step, role_id, execution.execution_context or None
            )

        context = self._context(execution, role_id, shown_step, project_path)
        guidance = await self.guidance.get_workflow_guidance(role_id, context)
        recommended: list[RecommendedTransition] = []
        if guidance.current_step is None or execution.execution_state.awaiting_transition:
            recommended = await self.transitions.get_recommended_transitions(
                role_id, context
            )
        return GuidanceResponse(
            status=execution.phase,
            execution=execution,
            guidance=guidance,
            recommended_transitions=recommended,
            blocked_reasons=list(execution.execution_state.blocked_reasons),
        )

    async def _promote_pending(
        self, execution: WorkflowExecution, project_path: Optional[str]
    ) -> WorkflowExecution:
        pending_id = execution.execution_state.pending_step_id
        blockers: list[str] = []
        step: Optional[WorkflowStep] = None
        if pending_id:
            details = await self.catalog.get_step(pending_id)
            step = details.step if details else None
            if step is not None and execution.execution_mode != ExecutionMode.GUIDED:
                blockers = await self._required_conditions_pass(
                    step, self._context(execution, project_path=project_path)
                )
        if execution.phase == ExecutionPhase.IN_PROGRESS and not pending_id:
            return execution

        def apply(current: WorkflowExecution) -> None:
            state = current.execution_state
            if state.phase == ExecutionPhase.BOOTSTRAPPED:
                state.phase = ExecutionPhase.IN_PROGRESS
            if state.pending_step_id != pending_id or not pending_id:
                return
            if step is None:
                state.pending_step_id = None
                return
            if blockers:
                state.blocked_reasons = blockers
                return
            current.current_step_id = step.id
            state.current_step = _marker(step)
            state.pending_step_id = None
            state.blocked_reasons = []

        execution = await self._mutate(execution.id, apply)
        if pending_id and not blockers and step is not None:
            logger.info(f"Execution {execution.id} advanced to step {step.id}")
        return execution

    # ------------------------------------------------------------------
    # Step reports
    async def report_step_completion(
        self,
        task_id: str,
        step_id: str,
        role_id: str,
        result: Union[StepResult, str],
        execution_data: Optional[dict[str, Any]] = None,
    ) -> StepReport:
        execution = await self._for_task(task_id)
        if execution.phase in TERMINAL_PHASES or execution.phase == ExecutionPhase.PAUSED:
            raise InvalidRequestError(
                f"Execution {execution.id} is {execution.phase.value}; resume it first"
            )
        details = await self.catalog.get_step(step_id)
        if details is None:
            raise StepNotFoundError(step_id)
        step = details.step
        if step.role_id != role_id:
            raise InvalidRequestError(f"Step '{step_id}' does not belong to role '{role_id}'")
        try:
            outcome = StepResult(result)
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown step result '{result}'") from exc

        message = str((execution_data or {}).get("error") or f"Step '{step_id}' failed")
        row = await self.progress.complete_step(
            task_id,
            step_id,
            role_id,
            outcome,
            execution_data=execution_data,
            error_details={"message": message} if outcome is StepResult.FAILURE else None,
        )
        if outcome is StepResult.FAILURE:

            def fail(current: WorkflowExecution) -> None:
                self._record_failure(
                    current, "STEP_FAILED", message, stepId=step_id, roleId=role_id
                )

            execution = await self._mutate(execution.id, fail)
            return StepReport(
                execution=execution,
                progress=row,
                next_step_id=execution.current_step_id,
            )
        return await self._advance(execution, step, role_id, row)

    async def _advance(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        role_id: str,
        row: StepProgress,
    ) -> StepReport:
        task_id = execution.task_id
        completed = await self.progress.completed_step_ids(task_id)
        next_step = await self.catalog.next_available(role_id, task_id)
        blockers: list[str] = []
        if next_step is not None and execution.execution_mode != ExecutionMode.GUIDED:
            blockers = await self._required_conditions_pass(
                next_step, self._context(execution, role_id)
            )

        def apply(current: WorkflowExecution) -> None:
            state = current.execution_state
            current.recovery_attempts = 0
            current.last_error = None
            current.steps_completed = len(completed)
            if current.total_steps:
                percentage = min(100, current.steps_completed * 100 // current.total_steps)
                current.progress_percentage = max(current.progress_percentage, percentage)
            state.last_completed_step = CompletedStepMarker(
                step_id=step.id, role_id=role_id
            )
            state.progress_markers.append(
                {
                    "stepId": step.id,
                    "roleId": role_id,
                    "result": StepResult.SUCCESS.value,
                    "recordedAt": utc_now().isoformat(),
                }
            )
            if state.phase == ExecutionPhase.BOOTSTRAPPED:
                state.phase = ExecutionPhase.IN_PROGRESS
            if role_id != current.current_role_id:
                return
            state.blocked_reasons = []
            if next_step is None:
                current.current_step_id = None
                state.current_step = None
                state.pending_step_id = None
                state.awaiting_transition = True
                return
            state.awaiting_transition = False
            if current.execution_mode == ExecutionMode.GUIDED or blockers:
                current.current_step_id = None
                state.current_step = None
                state.pending_step_id = next_step.id
                state.blocked_reasons = blockers
            else:
                current.current_step_id = next_step.id
                state.current_step = _marker(next_step)
                state.pending_step_id = None

        execution = await self._mutate(execution.id, apply)
        report = StepReport(
            execution=execution,
            progress=row,
            next_step_id=next_step.id if next_step else None,
            awaiting_transition=execution.execution_state.awaiting_transition,
        )
        if (
            report.awaiting_transition
            and execution.execution_mode == ExecutionMode.AUTOMATED
            and role_id == execution.current_role_id
        ):
            report = await self._auto_transition(report, role_id)
        return report

    async def _auto_transition(self, report: StepReport, role_id: str) -> StepReport:
        execution = report.execution
        context = self._context(execution, role_id)
        available = await self.transitions.get_available_transitions(role_id, context)
        if not available:
            report.execution = await self.complete_execution(execution.id)
            report.awaiting_transition = False
            return report
        recommended = await self.transitions.get_recommended_transitions(role_id, context)
        if not recommended:
            return report
        outcome = await self.execute_transition(
            recommended[0].id,
            execution.task_id,
            role_id,
            handoff_message=f"Automatic transition after completing role {role_id}",
        )
        report.execution = outcome.execution
        report.transition = outcome.result
        report.awaiting_transition = outcome.execution.execution_state.awaiting_transition
        report.next_step_id = outcome.execution.current_step_id
        return report

    # ------------------------------------------------------------------
    # Transitions
    async def execute_transition(
        self,
        transition_id: str,
        task_id: str,
        role_id: str,
        handoff_message: Optional[str] = None,
    ) -> TransitionOutcome:
        """Move the task to another role.

        The execution is switched to the target role by compare-and-swap
        before the task owner and delegation record are written, so of two
        concurrent handoffs out of one role only the first proceeds; the
        other raises ``InvalidRequestError``.
        """
        execution = await self._for_task(task_id)
        self._check_can_transition(execution, task_id, role_id)
        context = self._context(execution, role_id)
        claimed: Optional[WorkflowExecution] = None

        async def claim(transition: RoleTransition) -> None:
            nonlocal claimed
            first = await self.catalog.next_available(transition.to_role_id, task_id)

            def move(current: WorkflowExecution) -> None:
                self._check_can_transition(current, task_id, role_id)
                state = current.execution_state
                current.current_role_id = transition.to_role_id
                current.current_step_id = first.id if first else None
                current.recovery_attempts = 0
                current.last_error = None
                state.phase = ExecutionPhase.IN_PROGRESS
                state.current_step = _marker(first) if first else None
                state.pending_step_id = None
                state.blocked_reasons = []
                state.awaiting_transition = first is None
                state.current_context = {
                    **state.current_context,
                    "roleId": transition.to_role_id,
                }

            claimed = await self._mutate(execution.id, move)

        result = await self.transitions.execute_transition(
            transition_id, context, handoff_message, claim=claim
        )
        if result.success:
            self.cache.invalidate(task_id)
            return TransitionOutcome(result=result, execution=claimed)

        def fail(current: WorkflowExecution) -> None:
            if claimed is not None and current.current_role_id == claimed.current_role_id:
                # the handoff was not recorded, put the execution back
                current.current_role_id = execution.current_role_id
                current.current_step_id = execution.current_step_id
                current.recovery_attempts = execution.recovery_attempts
                current.execution_state = execution.execution_state.model_copy(deep=True)
            self._record_failure(
                current,
                "TRANSITION_FAILED",
                result.message,
                transitionId=transition_id,
            )

        execution = await self._mutate(execution.id, fail)
        return TransitionOutcome(result=result, execution=execution)

    @staticmethod
    def _check_can_transition(
        execution: WorkflowExecution, task_id: str, role_id: str
    ) -> None:
        if execution.phase in TERMINAL_PHASES or execution.phase == ExecutionPhase.PAUSED:
            raise InvalidRequestError(
                f"Execution {execution.id} is {execution.phase.value}; resume it first"
            )
        if role_id != execution.current_role_id:
            raise InvalidRequestError(
                f"Task {task_id} is in role '{execution.current_role_id}', not '{role_id}'"
            )


def build_engine(
    config: Optional[WaypointConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    cache: Optional[ContextCache] = None,
) -> ExecutionStateMachine:
    """Wire every engine component around one repository and one cache."""
    config = config or WaypointConfig()
    repository = repository or get_repository(config=config)
    cache = cache or ContextCache(config.cache)
    pool = BlockingIOPool(config.evaluator.io_workers)
    catalog = StepCatalog(repository)
    progress = StepProgressTracker(repository)
    evaluator = ConditionEvaluator(repository, config.evaluator, pool=pool)
    transitions = RoleTransitionEngine(repository, catalog, progress, pool, config.engine)
    guidance = GuidanceGenerator(catalog, evaluator, cache, pool)
    return ExecutionStateMachine(
        repository,
        catalog,
        progress,
        evaluator,
        transitions,
        guidance,
        cache,
        config.engine,
    )
