"""Waypoint: role-based workflow execution engine for coding agents."""

from .catalog import StepCatalog, load_catalog, load_default_catalog
from .config import WaypointConfig, load_config
from .engine import ExecutionStateMachine, build_engine
from .errors import WaypointError
from .models import ExecutionMode, Role, RoleTransition, WorkflowExecution, WorkflowStep
from .operations import WorkflowOperations
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "ExecutionMode",
    "ExecutionStateMachine",
    "Role",
    "RoleTransition",
    "StepCatalog",
    "WaypointConfig",
    "WaypointError",
    "WorkflowExecution",
    "WorkflowOperations",
    "WorkflowStep",
    "build_engine",
    "get_repository",
    "load_catalog",
    "load_config",
    "load_default_catalog",
]
