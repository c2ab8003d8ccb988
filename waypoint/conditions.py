"""Typed step conditions.

Every condition kind carries its own parameter model. ``StepCondition``
normalizes the declared ``condition_type`` (``context-check`` or the legacy
``CONTEXT_CHECK`` spelling) and tags the ``logic`` payload so pydantic can
dispatch it through a discriminated union. Kinds the engine does not know are
preserved as ``UnknownConditionLogic`` so that catalog loading can reject them
in strict mode or let the evaluator fail open.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WaypointModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConditionType(str, Enum):
    CONTEXT_CHECK = "context-check"
    FILE_EXISTS = "file-exists"
    TASK_STATUS = "task-status"
    GIT_STATUS = "git-status"
    PREVIOUS_STEP_COMPLETED = "previous-step-completed"
    CUSTOM_LOGIC = "custom-logic"


class CustomLogicType(str, Enum):
    EXPRESSION = "expression"
    DATABASE_QUERY = "database_query"
    FILE_CONTENT_CHECK = "file_content_check"
    ENVIRONMENT_CHECK = "environment_check"


_CUSTOM_TYPE_ALIASES = {
    "javascript": CustomLogicType.EXPRESSION.value,
    "boolean_expression": CustomLogicType.EXPRESSION.value,
}


def normalize_condition_type(value: Any) -> Optional[str]:
    """Return the canonical kind for ``value`` or ``None`` when unknown."""
    if isinstance(value, ConditionType):
        return value.value
    if not isinstance(value, str):
        return None
    candidate = value.strip().lower().replace("_", "-")
    try:
        return ConditionType(candidate).value
    except ValueError:
        return None


def normalize_custom_type(value: Any) -> Optional[str]:
    if isinstance(value, CustomLogicType):
        return value.value
    if not isinstance(value, str):
        return None
    candidate = value.strip().lower().replace("-", "_")
    candidate = _CUSTOM_TYPE_ALIASES.get(candidate, candidate)
    try:
        return CustomLogicType(candidate).value
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Per-kind parameter models


class ContextCheckLogic(WaypointModel):
    kind: Literal["context-check"] = "context-check"
    required_properties: list[str] = Field(default_factory=list)


class FileExistsLogic(WaypointModel):
    kind: Literal["file-exists"] = "file-exists"
    files: list[str] = Field(default_factory=list)
    directories: list[str] = Field(default_factory=list)


class TaskStatusLogic(WaypointModel):
    kind: Literal["task-status"] = "task-status"
    required_status: Optional[str] = None
    forbidden_statuses: list[str] = Field(default_factory=list)


class GitStatusLogic(WaypointModel):
    kind: Literal["git-status"] = "git-status"
    require_clean_working_tree: bool = False
    require_branch: Optional[str] = None


class PreviousStepCompletedLogic(WaypointModel):
    kind: Literal["previous-step-completed"] = "previous-step-completed"
    step_id: Optional[str] = None
    role_id: Optional[str] = None


class ExpressionCheck(WaypointModel):
    """Bounded boolean expression over ``parameters``."""

    type: Literal["expression"] = "expression"
    expression: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class DatabaseQueryCheck(WaypointModel):
    """Parameterized read-only query; valid when it returns rows."""

    type: Literal["database_query"] = "database_query"
    expression: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class FileContentParameters(WaypointModel):
    file_path: str
    pattern: Optional[str] = None
    encoding: Optional[str] = None


class FileContentCheck(WaypointModel):
    type: Literal["file_content_check"] = "file_content_check"
    expression: str = ""
    parameters: FileContentParameters


class EnvironmentParameters(WaypointModel):
    env_var: str
    expected_value: Optional[str] = None
    check_type: Literal["exists", "equals", "contains"] = "exists"


class EnvironmentCheck(WaypointModel):
    type: Literal["environment_check"] = "environment_check"
    expression: str = ""
    parameters: EnvironmentParameters


class UnknownCustomCheck(WaypointModel):
    type: Literal["unknown"] = "unknown"
    declared_type: str = ""
    expression: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


CustomCheck = Annotated[
    Union[
        ExpressionCheck,
        DatabaseQueryCheck,
        FileContentCheck,
        EnvironmentCheck,
        UnknownCustomCheck,
    ],
    Field(discriminator="type"),
]


class CustomLogic(WaypointModel):
    """Custom logic; the flat ``{type, expression, parameters}`` payload is
    moved under ``check`` and dispatched on its ``type``."""

    kind: Literal["custom-logic"] = "custom-logic"
    check: CustomCheck

    @model_validator(mode="before")
    @classmethod
    def _nest_check(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "check" in data:
            return data
        payload = {k: v for k, v in data.items() if k != "kind"}
        declared = payload.get("type")
        normalized = normalize_custom_type(declared)
        if normalized is None:
            payload = {
                "type": "unknown",
                "declaredType": str(declared),
                "expression": str(payload.get("expression") or ""),
                "parameters": payload.get("parameters") or {},
            }
        else:
            payload["type"] = normalized
        return {"kind": "custom-logic", "check": payload}


class UnknownConditionLogic(WaypointModel):
    kind: Literal["unknown"] = "unknown"
    declared_type: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


ConditionLogic = Annotated[
    Union[
        ContextCheckLogic,
        FileExistsLogic,
        TaskStatusLogic,
        GitStatusLogic,
        PreviousStepCompletedLogic,
        CustomLogic,
        UnknownConditionLogic,
    ],
    Field(discriminator="kind"),
]


class StepCondition(WaypointModel):
    """Typed precondition attached to a workflow step."""

    id: Optional[str] = None
    name: str
    condition_type: str
    logic: ConditionLogic
    is_required: bool = True

    @model_validator(mode="before")
    @classmethod
    def _tag_logic(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw_type = data.pop("conditionType", data.pop("condition_type", None))
        if raw_type is None:
            return data
        logic = data.get("logic")
        if logic is None:
            logic = {}
        if isinstance(logic, BaseModel):
            logic = logic.model_dump(by_alias=True)
        if not isinstance(logic, dict):
            raise ValueError("condition logic must be a mapping")
        kind = normalize_condition_type(raw_type)
        if kind is None and logic.get("kind") == "unknown":
            data["condition_type"] = str(raw_type)
            data["logic"] = logic
        elif kind is None:
            data["condition_type"] = str(raw_type)
            data["logic"] = {
                "kind": "unknown",
                "declaredType": str(raw_type),
                "payload": logic,
            }
        else:
            data["condition_type"] = kind
            data["logic"] = {**logic, "kind": kind}
        return data

    @property
    def is_unknown(self) -> bool:
        """True when the kind, or the custom-logic type, is not recognized."""
        if isinstance(self.logic, UnknownConditionLogic):
            return True
        return isinstance(self.logic, CustomLogic) and isinstance(
            self.logic.check, UnknownCustomCheck
        )


__all__ = [
    "WaypointModel",
    "ConditionType",
    "CustomLogicType",
    "StepCondition",
    "ContextCheckLogic",
    "FileExistsLogic",
    "TaskStatusLogic",
    "GitStatusLogic",
    "PreviousStepCompletedLogic",
    "CustomLogic",
    "ExpressionCheck",
    "DatabaseQueryCheck",
    "FileContentCheck",
    "FileContentParameters",
    "EnvironmentCheck",
    "EnvironmentParameters",
    "UnknownCustomCheck",
    "UnknownConditionLogic",
    "normalize_condition_type",
    "normalize_custom_type",
]
