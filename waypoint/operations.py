"""Request/response operation surface.

Every operation takes a plain mapping, validates it with a request model and
returns an ``OperationResult``. Errors never cross this boundary as
exceptions: they come back as ``success=False`` with a code and a message.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Awaitable, Callable, Optional

from pydantic import BaseModel, BeforeValidator, Field, ValidationError, model_validator

from .conditions import WaypointModel
from .catalog import load_catalog, load_default_catalog
from .config import WaypointConfig, load_config
from .engine.state_machine import ExecutionStateMachine, build_engine
from .errors import InvalidRequestError, WaypointError
from .models import ExecutionContext
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def _as_str(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


# Task ids arrive as strings or, from older clients, as integers.
TaskId = Annotated[str, BeforeValidator(_as_str)]


class OperationError(WaypointModel):
    code: str
    message: str


class OperationResult(WaypointModel):
    success: bool
    operation: str
    data: Any = None
    error: Optional[OperationError] = None


# ---------------------------------------------------------------------------
# Request models


class CreateExecutionRequest(WaypointModel):
    role_name: str
    execution_mode: Optional[str] = None
    task_id: Optional[TaskId] = None
    task_name: Optional[str] = None
    execution_context: dict[str, Any] = Field(default_factory=dict)


class ExecutionLookupRequest(WaypointModel):
    task_id: Optional[TaskId] = None
    execution_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_reference(self) -> "ExecutionLookupRequest":
        if not self.task_id and not self.execution_id:
            raise ValueError("taskId or executionId is required")
        return self


class ExecutionIdRequest(WaypointModel):
    execution_id: str


class UpdateExecutionRequest(WaypointModel):
    execution_id: str
    update_data: dict[str, Any]


class ExecutionContextRequest(WaypointModel):
    execution_id: str
    data_key: Optional[str] = None


class UpdateExecutionContextRequest(WaypointModel):
    execution_id: str
    context_updates: dict[str, Any]


class GuidanceRequest(WaypointModel):
    role_name: Optional[str] = None
    task_id: TaskId
    step_id: Optional[str] = None
    project_path: Optional[str] = None


class RoleTransitionsRequest(WaypointModel):
    role_name: str
    task_id: TaskId
    project_path: Optional[str] = None
    execution_data: Optional[dict[str, Any]] = None


class TransitionRequest(WaypointModel):
    transition_id: str
    task_id: TaskId
    role_id: str
    handoff_message: Optional[str] = None
    project_path: Optional[str] = None
    execution_data: Optional[dict[str, Any]] = None


class TaskRequest(WaypointModel):
    task_id: TaskId


class ReportStepRequest(WaypointModel):
    task_id: TaskId
    step_id: str
    role_id: str
    result: str
    execution_data: Optional[dict[str, Any]] = None


class StepProgressRequest(WaypointModel):
    task_id: TaskId
    role_id: Optional[str] = None
    step_id: Optional[str] = None


class WarningsRequest(WaypointModel):
    limit: Optional[int] = Field(None, ge=1)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json")
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if isinstance(value, dict):
        return {key: _dump(item) for key, item in value.items()}
    return value


class WorkflowOperations:
    """Named async operations over an ``ExecutionStateMachine``."""

    def __init__(self, engine: ExecutionStateMachine) -> None:
        self.engine = engine
        self._handlers: dict[
            str, tuple[type[WaypointModel], Callable[[Any], Awaitable[Any]]]
        ] = {
            "create_execution": (CreateExecutionRequest, self._create_execution),
            "get_execution": (ExecutionLookupRequest, self._get_execution),
            "update_execution": (UpdateExecutionRequest, self._update_execution),
            "complete_execution": (ExecutionIdRequest, self._complete_execution),
            "get_active_executions": (WaypointModel, self._get_active_executions),
            "get_execution_context": (ExecutionContextRequest, self._get_execution_context),
            "update_execution_context": (
                UpdateExecutionContextRequest,
                self._update_execution_context,
            ),
            "get_workflow_guidance": (GuidanceRequest, self._get_workflow_guidance),
            "get_available_transitions": (
                RoleTransitionsRequest,
                self._get_available_transitions,
            ),
            "get_recommended_transitions": (
                RoleTransitionsRequest,
                self._get_recommended_transitions,
            ),
            "validate_transition": (TransitionRequest, self._validate_transition),
            "execute_transition": (TransitionRequest, self._execute_transition),
            "get_transition_history": (TaskRequest, self._get_transition_history),
            "report_step_completion": (ReportStepRequest, self._report_step_completion),
            "pause_execution": (ExecutionIdRequest, self._pause_execution),
            "resume_execution": (ExecutionIdRequest, self._resume_execution),
            "get_step_progress": (StepProgressRequest, self._get_step_progress),
            "get_evaluation_warnings": (WarningsRequest, self._get_evaluation_warnings),
        }

    @classmethod
    async def create(
        cls,
        config: Optional[WaypointConfig] = None,
        repository: Optional[WorkflowRepository] = None,
    ) -> "WorkflowOperations":
        """Build the engine and install a catalog if the repository has none."""
        config = config or load_config()
        engine = build_engine(config, repository=repository)
        if not await engine.catalog.list_roles():
            if config.catalog_path:
                document = load_catalog(config.catalog_path, strict=config.strict_catalog)
            else:
                document = load_default_catalog(strict=config.strict_catalog)
            await engine.catalog.install(document)
        return cls(engine)

    @property
    def operations(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(
        self, operation: str, payload: Optional[dict[str, Any]] = None
    ) -> OperationResult:
        """Validate ``payload`` for ``operation`` and run it."""
        if operation not in self._handlers:
            return self._failure(
                operation, "VALIDATION_ERROR", f"Unknown operation '{operation}'"
            )
        request_model, handler = self._handlers[operation]
        try:
            request = request_model.model_validate(payload or {})
        except ValidationError as exc:
            return self._failure(operation, InvalidRequestError.code, str(exc))
        try:
            data = await handler(request)
        except WaypointError as exc:
            logger.info(f"Operation {operation} failed: {exc}")
            return self._failure(operation, exc.code, str(exc))
        except Exception as exc:
            logger.exception(f"Unexpected error in operation {operation}")
            return self._failure(operation, WaypointError.code, str(exc))
        return OperationResult(success=True, operation=operation, data=_dump(data))

    @staticmethod
    def _failure(operation: str, code: str, message: str) -> OperationResult:
        return OperationResult(
            success=False,
            operation=operation,
            error=OperationError(code=code, message=message),
        )

    # ------------------------------------------------------------------
    async def _context(
        self,
        task_id: str,
        role_id: str,
        project_path: Optional[str],
        execution_data: Optional[dict[str, Any]],
    ) -> ExecutionContext:
        execution = await self.engine.repository.get_execution_for_task(task_id)
        data = dict(execution.execution_context) if execution else {}
        data.update(execution_data or {})
        return ExecutionContext(
            task_id=task_id,
            role_id=role_id,
            project_path=project_path or data.get("projectPath"),
            execution_data=data,
        )

    async def _create_execution(self, request: CreateExecutionRequest):
        return await self.engine.create_execution(
            request.role_name,
            execution_mode=request.execution_mode,
            task_id=request.task_id,
            execution_context=request.execution_context,
            task_name=request.task_name,
        )

    async def _get_execution(self, request: ExecutionLookupRequest):
        if request.execution_id:
            return await self.engine.get_execution(request.execution_id)
        return await self.engine.get_execution_for_task(request.task_id)

    async def _update_execution(self, request: UpdateExecutionRequest):
        return await self.engine.update_execution(
            request.execution_id, request.update_data
        )

    async def _complete_execution(self, request: ExecutionIdRequest):
        return await self.engine.complete_execution(request.execution_id)

    async def _get_active_executions(self, request: WaypointModel):
        return await self.engine.get_active_executions()

    async def _get_execution_context(self, request: ExecutionContextRequest):
        return await self.engine.get_execution_context(
            request.execution_id, request.data_key
        )

    async def _update_execution_context(self, request: UpdateExecutionContextRequest):
        return await self.engine.update_execution_context(
            request.execution_id, request.context_updates
        )

    async def _get_workflow_guidance(self, request: GuidanceRequest):
        return await self.engine.get_guidance(
            request.task_id,
            role_id=request.role_name,
            step_id=request.step_id,
            project_path=request.project_path,
        )

    async def _get_available_transitions(self, request: RoleTransitionsRequest):
        context = await self._context(
            request.task_id, request.role_name, request.project_path, request.execution_data
        )
        return await self.engine.transitions.get_available_transitions(
            request.role_name, context
        )

    async def _get_recommended_transitions(self, request: RoleTransitionsRequest):
        context = await self._context(
            request.task_id, request.role_name, request.project_path, request.execution_data
        )
        return await self.engine.transitions.get_recommended_transitions(
            request.role_name, context
        )

    async def _validate_transition(self, request: TransitionRequest):
        context = await self._context(
            request.task_id, request.role_id, request.project_path, request.execution_data
        )
        return await self.engine.transitions.validate_transition(
            request.transition_id, context
        )

    async def _execute_transition(self, request: TransitionRequest):
        if request.execution_data:
            execution = await self.engine.get_execution_for_task(request.task_id)
            await self.engine.update_execution_context(
                execution.id, request.execution_data
            )
        return await self.engine.execute_transition(
            request.transition_id,
            request.task_id,
            request.role_id,
            handoff_message=request.handoff_message,
        )

    async def _get_transition_history(self, request: TaskRequest):
        return await self.engine.transitions.get_transition_history(request.task_id)

    async def _report_step_completion(self, request: ReportStepRequest):
        return await self.engine.report_step_completion(
            request.task_id,
            request.step_id,
            request.role_id,
            request.result,
            execution_data=request.execution_data,
        )

    async def _pause_execution(self, request: ExecutionIdRequest):
        return await self.engine.pause_execution(request.execution_id)

    async def _resume_execution(self, request: ExecutionIdRequest):
        return await self.engine.resume_execution(request.execution_id)

    async def _get_step_progress(self, request: StepProgressRequest):
        return await self.engine.progress.history(
            request.task_id, role_id=request.role_id, step_id=request.step_id
        )

    async def _get_evaluation_warnings(self, request: WarningsRequest):
        warnings = self.engine.evaluator.warnings
        if request.limit:
            warnings = warnings[-request.limit :]
        return warnings
