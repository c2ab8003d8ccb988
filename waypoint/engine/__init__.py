"""Workflow engine components."""

from .cache import CacheStats, ContextCache
from .evaluator import (
    ConditionEvaluator,
    ConditionResult,
    EvaluationWarning,
    ValidationSummary,
    evaluate_expression,
)
from .git import GitInspector, GitStatus
from .guidance import GuidanceGenerator, ProjectContext, WorkflowGuidance
from .progress import StepProgressTracker, StepResult
from .state_machine import (
    ExecutionStateMachine,
    ExecutionUpdate,
    GuidanceResponse,
    StepReport,
    TransitionOutcome,
    build_engine,
)
from .transitions import (
    RecommendedTransition,
    RoleTransitionEngine,
    TransitionResult,
    TransitionValidation,
)
from .workers import BlockingIOPool

__all__ = [
    "BlockingIOPool",
    "CacheStats",
    "ConditionEvaluator",
    "ConditionResult",
    "ContextCache",
    "EvaluationWarning",
    "ExecutionStateMachine",
    "ExecutionUpdate",
    "GitInspector",
    "GitStatus",
    "GuidanceGenerator",
    "GuidanceResponse",
    "ProjectContext",
    "RecommendedTransition",
    "RoleTransitionEngine",
    "StepProgressTracker",
    "StepReport",
    "StepResult",
    "TransitionOutcome",
    "TransitionResult",
    "TransitionValidation",
    "ValidationSummary",
    "WorkflowGuidance",
    "build_engine",
    "evaluate_expression",
]
