"""Condition evaluation for workflow steps.

``ConditionEvaluator.evaluate`` is total: whatever the condition payload, it
returns a ``ConditionResult`` and never raises. Kinds are dispatched through
a strategy table keyed by the parsed logic model. Unknown kinds fail open:
they evaluate as valid but leave an ``EvaluationWarning`` behind so the
misconfiguration can be found later.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from pydantic import Field, ValidationError

from ..conditions import (
    ContextCheckLogic,
    CustomLogic,
    DatabaseQueryCheck,
    EnvironmentCheck,
    ExpressionCheck,
    FileContentCheck,
    FileExistsLogic,
    GitStatusLogic,
    PreviousStepCompletedLogic,
    StepCondition,
    TaskStatusLogic,
    UnknownConditionLogic,
    UnknownCustomCheck,
    WaypointModel,
)
from ..config import EvaluatorConfig
from ..constants import MAX_EXPRESSION_CLAUSES
from ..models import ExecutionContext, StepStatus, utc_now
from ..persistence.repository import WorkflowRepository
from .git import GitInspector
from .workers import BlockingIOPool

logger = logging.getLogger(__name__)

DANGEROUS_QUERY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"drop\s+table",
        r"delete\s+from",
        r"update\s+\w+\s+set",
        r"insert\s+into",
        r"create\s+table",
        r"alter\s+table",
        r"exec\s*\(",
        r"execute\s*\(",
    )
]

_CLAUSE_COMPARE = re.compile(r"^([\w.]+)\s*(==|!=)\s*(.+)$")
_CLAUSE_EXISTS = re.compile(r"^([\w.]+)\s+exists$")


class ConditionResult(WaypointModel):
    is_valid: bool
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    warning: Optional[str] = None


class ValidationSummary(WaypointModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    details: dict[str, ConditionResult] = Field(default_factory=dict)


class EvaluationWarning(WaypointModel):
    """Record of a condition that evaluated as valid only because its kind is unknown."""

    condition_name: str
    declared_type: str
    message: str
    task_id: Optional[str] = None
    step_id: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utc_now)


ConditionInput = Union[StepCondition, Mapping[str, Any]]
Strategy = Callable[[StepCondition, ExecutionContext], Awaitable[ConditionResult]]


def resolve_path(data: Any, path: str) -> Any:
    """Walk a dot path through nested mappings, trying camelCase and snake_case keys."""
    current = data
    for segment in path.split("."):
        if not isinstance(current, Mapping):
            return None
        if segment in current:
            current = current[segment]
            continue
        alternate = _alternate_key(segment)
        if alternate in current:
            current = current[alternate]
            continue
        return None
    return current


def _alternate_key(key: str) -> str:
    if "_" in key:
        head, *rest = key.split("_")
        return head + "".join(part.title() for part in rest)
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


class ExpressionError(ValueError):
    pass


def evaluate_expression(
    expression: str, parameters: Mapping[str, Any], allowed_pattern: str
) -> bool:
    """Evaluate a restricted boolean expression without executing code.

    Supported clauses are ``name == value``, ``name != value``,
    ``name exists``, ``true`` and ``false``, combined with ``&&`` and ``||``
    (``&&`` binds tighter). Names are dot paths into ``parameters``.
    Anything else raises ``ExpressionError``.
    """
    text = expression.strip()
    if not text or not re.match(allowed_pattern, text):
        raise ExpressionError("Expression contains unsafe characters")
    groups = [group.split("&&") for group in text.split("||")]
    if sum(len(group) for group in groups) > MAX_EXPRESSION_CLAUSES:
        raise ExpressionError(
            f"Expression has more than {MAX_EXPRESSION_CLAUSES} clauses"
        )
    return any(
        all(_evaluate_clause(clause.strip(), parameters) for clause in group)
        for group in groups
    )


def _evaluate_clause(clause: str, parameters: Mapping[str, Any]) -> bool:
    if clause in ("true", "false"):
        return clause == "true"
    match = _CLAUSE_EXISTS.match(clause)
    if match:
        return resolve_path(parameters, match.group(1)) is not None
    match = _CLAUSE_COMPARE.match(clause)
    if match:
        name, operator, raw = match.groups()
        expected = raw.strip()
        if len(expected) >= 2 and expected[0] == expected[-1] and expected[0] in "'\"":
            expected = expected[1:-1]
        actual = _as_text(resolve_path(parameters, name))
        return actual == expected if operator == "==" else actual != expected
    raise ExpressionError(f"Unsupported expression clause: {clause}")


class ConditionEvaluator:
    """Evaluate typed step conditions against an execution context."""

    def __init__(
        self,
        repository: WorkflowRepository,
        config: Optional[EvaluatorConfig] = None,
        pool: Optional[BlockingIOPool] = None,
        git: Optional[GitInspector] = None,
    ) -> None:
        self.repository = repository
        self.config = config or EvaluatorConfig()
        self.pool = pool or BlockingIOPool(self.config.io_workers)
        self.git = git or GitInspector(timeout=self.config.git_timeout_seconds)
        self._warnings: deque[EvaluationWarning] = deque(
            maxlen=self.config.warning_buffer
        )
        self._strategies: dict[type, Strategy] = {
            ContextCheckLogic: self._context_check,
            FileExistsLogic: self._file_exists,
            TaskStatusLogic: self._task_status,
            GitStatusLogic: self._git_status,
            PreviousStepCompletedLogic: self._previous_step_completed,
            CustomLogic: self._custom_logic,
            UnknownConditionLogic: self._unknown_kind,
        }
        self._custom_strategies: dict[type, Strategy] = {
            ExpressionCheck: self._expression,
            DatabaseQueryCheck: self._database_query,
            FileContentCheck: self._file_content,
            EnvironmentCheck: self._environment,
            UnknownCustomCheck: self._unknown_kind,
        }

    # ------------------------------------------------------------------
    @property
    def warnings(self) -> list[EvaluationWarning]:
        """Most recent fail-open warnings, oldest first."""
        return list(self._warnings)

    def clear_warnings(self) -> None:
        self._warnings.clear()

    async def evaluate(
        self,
        condition: ConditionInput,
        context: Union[ExecutionContext, Mapping[str, Any]],
    ) -> ConditionResult:
        try:
            if not isinstance(context, ExecutionContext):
                context = ExecutionContext.model_validate(context)
            if not isinstance(condition, StepCondition):
                condition = StepCondition.model_validate(condition)
        except ValidationError as exc:
            error = exc.errors()[0]
            location = ".".join(str(p) for p in error["loc"])
            if location:
                reason = f"Invalid condition: {location}: {error['msg']}"
            else:
                reason = f"Invalid condition: {error['msg']}"
            return ConditionResult(is_valid=False, reason=reason)
        except Exception as exc:
            return ConditionResult(is_valid=False, reason=f"Invalid condition: {exc}")

        strategy = self._strategies[type(condition.logic)]
        try:
            return await strategy(condition, context)
        except (asyncio.TimeoutError, subprocess.TimeoutExpired):
            logger.warning(f"Condition '{condition.name}' timed out")
            return ConditionResult(is_valid=False, reason="timeout")
        except Exception as exc:
            logger.warning(f"Condition '{condition.name}' raised: {exc}")
            return ConditionResult(
                is_valid=False,
                reason=str(exc) or exc.__class__.__name__,
                details={"error": exc.__class__.__name__},
            )

    async def validate_all(
        self,
        conditions: list[ConditionInput],
        context: Union[ExecutionContext, Mapping[str, Any]],
    ) -> ValidationSummary:
        """Evaluate every condition; required failures become errors, optional ones warnings."""
        results = await asyncio.gather(
            *(self.evaluate(condition, context) for condition in conditions)
        )
        summary = ValidationSummary(is_valid=True)
        for index, (condition, result) in enumerate(zip(conditions, results)):
            name, required = _describe(condition, index)
            summary.details[name] = result
            if result.warning:
                summary.warnings.append(result.warning)
            if result.is_valid:
                continue
            message = f"Condition '{name}' failed: {result.reason}"
            if required:
                summary.errors.append(message)
            else:
                summary.warnings.append(message)
        summary.is_valid = not summary.errors
        return summary

    # ------------------------------------------------------------------
    def _project_root(self, context: ExecutionContext) -> Path:
        return Path(context.project_path) if context.project_path else Path.cwd()

    def _resolve(self, path: str, context: ExecutionContext) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self._project_root(context) / candidate

    async def _context_check(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        lookup = context.as_lookup()
        missing = []
        for prop in condition.logic.required_properties:
            value = resolve_path(lookup, prop)
            if value is None:
                value = resolve_path(context.execution_data, prop)
            if value is None:
                missing.append(prop)
        if missing:
            return ConditionResult(
                is_valid=False,
                reason=f"Missing required properties: {', '.join(missing)}",
                details={"missingProperties": missing},
            )
        return ConditionResult(is_valid=True)

    async def _file_exists(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        logic = condition.logic
        checks = [("file", p, self._resolve(p, context)) for p in logic.files]
        checks += [("directory", p, self._resolve(p, context)) for p in logic.directories]

        def scan() -> list[str]:
            missing = []
            for kind, raw, resolved in checks:
                present = resolved.is_file() if kind == "file" else resolved.is_dir()
                if not present:
                    missing.append(f"{kind}: {raw}")
            return missing

        missing = await self.pool.run(scan, timeout=self.config.io_timeout_seconds)
        if missing:
            return ConditionResult(
                is_valid=False,
                reason=f"Missing required items: {', '.join(missing)}",
                details={"missingItems": missing},
            )
        return ConditionResult(is_valid=True, details={"checked": len(checks)})

    async def _task_status(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        logic = condition.logic
        task = await self.repository.get_task(context.task_id)
        if task is None:
            return ConditionResult(is_valid=False, reason="Task not found")
        status = task.status.value
        if logic.required_status and status != logic.required_status:
            return ConditionResult(
                is_valid=False,
                reason=f"Task status is '{status}', required '{logic.required_status}'",
                details={"currentStatus": status, "requiredStatus": logic.required_status},
            )
        if status in logic.forbidden_statuses:
            return ConditionResult(
                is_valid=False,
                reason=f"Task status '{status}' is forbidden",
                details={"currentStatus": status},
            )
        return ConditionResult(is_valid=True, details={"currentStatus": status})

    async def _git_status(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        logic = condition.logic
        try:
            status = await self.pool.run(
                self.git.status,
                cwd=self._project_root(context),
                timeout=self.config.git_timeout_seconds,
            )
        except subprocess.CalledProcessError as exc:
            message = (exc.stderr or "").strip() or str(exc)
            return ConditionResult(
                is_valid=False, reason=f"Git status check failed: {message}"
            )
        except FileNotFoundError as exc:
            return ConditionResult(
                is_valid=False, reason=f"Git status check failed: {exc}"
            )
        details = status.as_dict()
        if logic.require_clean_working_tree and not status.is_clean:
            return ConditionResult(
                is_valid=False, reason="Working tree is not clean", details=details
            )
        if logic.require_branch and status.branch != logic.require_branch:
            return ConditionResult(
                is_valid=False,
                reason=f"Current branch is '{status.branch}', required '{logic.require_branch}'",
                details=details,
            )
        return ConditionResult(is_valid=True, details=details)

    async def _previous_step_completed(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        logic = condition.logic
        if not logic.step_id:
            return ConditionResult(is_valid=True, reason="No previous step specified")
        rows = await self.repository.list_step_progress(
            context.task_id,
            role_id=logic.role_id or context.role_id,
            step_id=logic.step_id,
            status=StepStatus.COMPLETED,
        )
        if not rows:
            return ConditionResult(
                is_valid=False,
                reason=f"Previous step '{logic.step_id}' not completed",
                details={"requiredStepId": logic.step_id},
            )
        latest = rows[-1]
        return ConditionResult(
            is_valid=True,
            details={"completedAt": latest.completed_at.isoformat() if latest.completed_at else None},
        )

    async def _custom_logic(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        strategy = self._custom_strategies[type(condition.logic.check)]
        return await strategy(condition, context)

    async def _unknown_kind(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        logic = condition.logic
        if isinstance(logic, CustomLogic):
            declared = f"custom-logic/{logic.check.declared_type}"
        else:
            declared = logic.declared_type or condition.condition_type
        message = (
            f"Unknown condition type '{declared}' in condition '{condition.name}'; "
            "treating as valid"
        )
        logger.warning(message)
        self._warnings.append(
            EvaluationWarning(
                condition_name=condition.name,
                declared_type=declared,
                message=message,
                task_id=context.task_id,
                step_id=context.step_id,
            )
        )
        return ConditionResult(
            is_valid=True, warning=message, details={"failOpen": True}
        )

    # -- custom logic ------------------------------------------------------
    async def _expression(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        check = condition.logic.check
        parameters = {**context.as_lookup(), **context.execution_data, **check.parameters}
        try:
            result = evaluate_expression(
                check.expression, parameters, self.config.allowed_expression_pattern
            )
        except ExpressionError as exc:
            logger.warning(f"Expression '{check.expression}' rejected: {exc}")
            return ConditionResult(
                is_valid=False,
                reason=str(exc),
                details={"expression": check.expression},
            )
        return ConditionResult(
            is_valid=result,
            reason=None if result else "Expression evaluated to false",
            details={"expression": check.expression, "result": result},
        )

    async def _database_query(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        check = condition.logic.check
        query = check.expression.strip()
        details = {"query": query, "parameters": check.parameters}
        if not query.lower().startswith("select"):
            return ConditionResult(
                is_valid=False,
                reason="Only SELECT queries are allowed",
                details=details,
            )
        if any(pattern.search(query) for pattern in DANGEROUS_QUERY_PATTERNS):
            return ConditionResult(
                is_valid=False,
                reason="Query contains potentially dangerous operations",
                details=details,
            )
        limit = self.config.max_query_parameters
        if len(check.parameters) > limit:
            return ConditionResult(
                is_valid=False,
                reason=f"Too many parameters (max {limit} allowed)",
                details=details,
            )
        rows = await self.repository.run_readonly_query(query, dict(check.parameters))
        if len(rows) > self.config.max_query_results:
            logger.warning(
                f"Query returned {len(rows)} rows, truncating to {self.config.max_query_results}"
            )
            rows = rows[: self.config.max_query_results]
        is_valid = bool(rows)
        return ConditionResult(
            is_valid=is_valid,
            reason=None if is_valid else "Database query returned no results",
            details={**details, "resultCount": len(rows)},
        )

    async def _file_content(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        check = condition.logic.check
        params = check.parameters
        path = self._resolve(params.file_path, context)
        encoding = params.encoding or self.config.file_encoding

        def read() -> Optional[tuple[bool, dict[str, Any]]]:
            if not path.is_file():
                return None
            content = path.read_text(encoding=encoding)
            # pattern matching must stay under the pool timeout
            if params.pattern:
                matches = re.findall(params.pattern, content)
                return bool(matches), {
                    "filePath": params.file_path,
                    "matchCount": len(matches),
                }
            return check.expression in content, {
                "filePath": params.file_path,
                "searchTerm": check.expression,
            }

        outcome = await self.pool.run(read, timeout=self.config.io_timeout_seconds)
        if outcome is None:
            return ConditionResult(
                is_valid=False, reason=f"File not found: {params.file_path}"
            )
        is_valid, details = outcome
        return ConditionResult(
            is_valid=is_valid,
            reason=None if is_valid else "File content check failed",
            details=details,
        )

    async def _environment(
        self, condition: StepCondition, context: ExecutionContext
    ) -> ConditionResult:
        params = condition.logic.check.parameters
        actual = os.environ.get(params.env_var)
        name = params.env_var
        if params.check_type == "exists":
            is_valid = actual is not None
            reason = f"Environment variable '{name}' does not exist"
        elif params.check_type == "equals":
            is_valid = actual == params.expected_value
            reason = f"Environment variable '{name}' does not equal expected value"
        else:
            is_valid = (
                actual is not None
                and params.expected_value is not None
                and params.expected_value in actual
            )
            reason = f"Environment variable '{name}' does not contain expected value"
        return ConditionResult(
            is_valid=is_valid,
            reason=None if is_valid else reason,
            details={"envVar": name, "checkType": params.check_type},
        )


def _describe(condition: ConditionInput, index: int) -> tuple[str, bool]:
    if isinstance(condition, StepCondition):
        return condition.name, condition.is_required
    if isinstance(condition, Mapping):
        name = condition.get("name") or f"condition_{index}"
        required = condition.get("isRequired", condition.get("is_required", True))
        return str(name), bool(required)
    return f"condition_{index}", True
