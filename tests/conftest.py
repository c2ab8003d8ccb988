import pytest

from waypoint.catalog import parse_catalog
from waypoint.config import EngineConfig, WaypointConfig
from waypoint.engine import build_engine
from waypoint.engine.cache import ContextCache
from waypoint.persistence import InMemoryWorkflowRepository

TRIVIAL = [
    {
        "name": "has_task",
        "conditionType": "context-check",
        "logic": {"requiredProperties": ["taskId"]},
    }
]

SMALL_CATALOG = {
    "roles": [
        {
            "id": "architect",
            "priority": 1,
            "capabilities": {"qualityReminders": ["Keep it simple"]},
            "steps": [
                {"name": "context_review", "sequenceNumber": 1, "conditions": TRIVIAL},
                {
                    "name": "implementation_planning",
                    "sequenceNumber": 2,
                    "conditions": TRIVIAL,
                    "qualityChecklist": ["Plan reviewed"],
                },
                {
                    "name": "subtask_creation",
                    "sequenceNumber": 3,
                    "conditions": TRIVIAL,
                    "triggerReport": True,
                    "reportType": "implementation_plan",
                },
            ],
        },
        {
            "id": "builder",
            "priority": 2,
            "steps": [
                {"name": "build", "sequenceNumber": 1, "conditions": TRIVIAL},
            ],
        },
        {
            "id": "gated",
            "priority": 3,
            "steps": [
                {"name": "prepare", "sequenceNumber": 1},
                {
                    "name": "ship",
                    "sequenceNumber": 2,
                    "conditions": [
                        {
                            "name": "needs_approval",
                            "conditionType": "context-check",
                            "logic": {"requiredProperties": ["approval"]},
                        }
                    ],
                },
            ],
        },
    ],
    "transitions": [
        {
            "transitionName": "architecture_to_implementation",
            "fromRoleId": "architect",
            "toRoleId": "builder",
            "conditions": {"allRequiredStepsCompleted": True},
        },
    ],
}


@pytest.fixture
def small_catalog():
    return parse_catalog(SMALL_CATALOG)


@pytest.fixture
def make_engine(small_catalog):
    """Return an async factory building an isolated engine per call."""

    async def factory(
        mode="GUIDED",
        max_recovery_attempts=3,
        repository=None,
        document=None,
    ):
        config = WaypointConfig(
            engine=EngineConfig(
                default_execution_mode=mode,
                max_recovery_attempts=max_recovery_attempts,
                cas_backoff_base=0.0,
            )
        )
        engine = build_engine(
            config,
            repository=repository or InMemoryWorkflowRepository(),
            cache=ContextCache(config.cache),
        )
        await engine.catalog.install(document or small_catalog)
        return engine

    return factory
