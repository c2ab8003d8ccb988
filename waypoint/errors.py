"""Exception hierarchy for the waypoint engine."""

from __future__ import annotations


class WaypointError(Exception):
    """Base class for all engine errors."""

    code = "INTERNAL_ERROR"


class InvalidRequestError(WaypointError):
    """Raised when a request is missing data or has the wrong shape."""

    code = "VALIDATION_ERROR"


class NotFoundError(WaypointError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"


class RoleNotFoundError(NotFoundError):
    def __init__(self, role: str) -> None:
        super().__init__(f"Workflow role '{role}' not found")
        self.role = role


class StepNotFoundError(NotFoundError):
    def __init__(self, step_id: str) -> None:
        super().__init__(f"Workflow step '{step_id}' not found")
        self.step_id = step_id


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' not found")
        self.task_id = task_id


class ExecutionNotFoundError(NotFoundError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Workflow execution not found: {reference}")
        self.reference = reference


class CatalogError(WaypointError):
    """Raised when a catalog document fails load-time validation."""

    code = "CATALOG_ERROR"

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or []


class StepAlreadyInProgressError(WaypointError):
    """Raised when a step attempt is started while another one is open."""

    code = "CONFLICT"

    def __init__(self, task_id: str, step_id: str, role_id: str) -> None:
        super().__init__(
            f"Step '{step_id}' is already in progress for task '{task_id}' (role '{role_id}')"
        )
        self.task_id = task_id
        self.step_id = step_id
        self.role_id = role_id


class ExecutionExistsError(WaypointError):
    """Raised when a task already owns an active execution."""

    code = "CONFLICT"


class ConcurrentModificationError(WaypointError):
    """Raised when a compare-and-swap on an execution loses the race."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, execution_id: str, expected_version: int) -> None:
        super().__init__(
            f"Execution {execution_id} was modified concurrently (expected version {expected_version})"
        )
        self.execution_id = execution_id
        self.expected_version = expected_version


class StorageError(WaypointError):
    """Raised when a state-changing write cannot be persisted."""

    code = "STORAGE_ERROR"


__all__ = [
    "WaypointError",
    "InvalidRequestError",
    "NotFoundError",
    "RoleNotFoundError",
    "StepNotFoundError",
    "TaskNotFoundError",
    "ExecutionNotFoundError",
    "CatalogError",
    "StepAlreadyInProgressError",
    "ExecutionExistsError",
    "ConcurrentModificationError",
    "StorageError",
]
