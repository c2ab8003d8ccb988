import asyncio

import pytest

from waypoint.catalog import load_default_catalog, parse_catalog
from waypoint.errors import (
    ConcurrentModificationError,
    ExecutionExistsError,
    InvalidRequestError,
    RoleNotFoundError,
    StepNotFoundError,
)
from waypoint.models import ExecutionContext, ExecutionMode, ExecutionPhase, StepStatus, TaskStatus
from waypoint.persistence import InMemoryWorkflowRepository, SQLModelWorkflowRepository


class FlakyRepository(InMemoryWorkflowRepository):
    """Loses the compare-and-swap race a fixed number of times."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.saves = 0

    async def save_execution(self, execution, expected_version):
        self.saves += 1
        if self.conflicts:
            self.conflicts -= 1
            raise ConcurrentModificationError(execution.id, expected_version)
        return await super().save_execution(execution, expected_version)


@pytest.mark.asyncio
async def test_guided_step_advancement(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution("architect")
    task_id = execution.task_id
    assert execution.phase == ExecutionPhase.BOOTSTRAPPED
    assert execution.current_step_id == "architect.context_review"
    assert execution.total_steps == 6

    first = await engine.get_guidance(task_id)
    assert first.status == ExecutionPhase.IN_PROGRESS
    assert first.guidance.current_step.id == "architect.context_review"
    assert first.guidance.condition_status.is_valid
    assert first.guidance.quality_reminders == ["Keep it simple"]
    assert first.recommended_transitions == []

    report = await engine.report_step_completion(
        task_id, "architect.context_review", "architect", "success"
    )
    assert report.progress.status == StepStatus.COMPLETED
    assert report.next_step_id == "architect.implementation_planning"
    assert report.execution.current_step_id is None
    assert report.execution.execution_state.pending_step_id == "architect.implementation_planning"

    second = await engine.get_guidance(task_id)
    assert second.guidance.current_step.id == "architect.implementation_planning"
    assert second.execution.current_step_id == "architect.implementation_planning"
    assert "Plan reviewed" in second.guidance.quality_reminders

    history = await engine.progress.history(task_id)
    assert [(r.step_id, r.status) for r in history] == [
        ("architect.context_review", StepStatus.COMPLETED),
        ("architect.implementation_planning", StepStatus.IN_PROGRESS),
    ]


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_role_exhaustion_recommends(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution("architect")
    task_id = execution.task_id

    seen = []
    for step in ("context_review", "implementation_planning", "subtask_creation"):
        await engine.get_guidance(task_id)
        report = await engine.report_step_completion(
            task_id, f"architect.{step}", "architect", "success"
        )
        seen.append(report.execution.progress_percentage)
    assert seen == sorted(seen)
    assert seen[-1] == 50
    assert report.awaiting_transition is True

    lowered = await engine.update_execution(execution.id, {"progressPercentage": 10})
    assert lowered.progress_percentage == 50

    guidance = await engine.get_guidance(task_id)
    assert guidance.guidance.current_step is None
    recommended = guidance.recommended_transitions
    assert [t.id for t in recommended] == ["architecture_to_implementation"]
    assert recommended[0].recommendation_score == 100


@pytest.mark.asyncio
async def test_boomerang_transition_requires_task_analysis(make_engine):
    engine = await make_engine(document=load_default_catalog())
    execution = await engine.create_execution("boomerang")
    task_id = execution.task_id
    context = ExecutionContext(task_id=task_id, role_id="boomerang")

    validation = await engine.transitions.validate_transition(
        "boomerang_to_researcher", context
    )
    assert validation.valid is False
    assert "Required step 'boomerang.task_analysis' not completed" in validation.errors

    outcome = await engine.execute_transition("boomerang_to_researcher", task_id, "boomerang")
    assert outcome.result.success is False
    assert outcome.result.message.startswith("Transition validation failed")
    assert outcome.execution.current_role_id == "boomerang"
    assert outcome.execution.recovery_attempts == 1
    task = await engine.repository.get_task(task_id)
    assert task.current_role == "boomerang"
    assert task.redelegation_count == 1
    assert await engine.transitions.get_transition_history(task_id) == []

    for step in ("git_integration_setup", "task_analysis"):
        await engine.report_step_completion(task_id, f"boomerang.{step}", "boomerang", "success")

    validation = await engine.transitions.validate_transition(
        "boomerang_to_researcher", context
    )
    assert validation.valid, validation.errors

    engine.cache.set(task_id, "project", {"projectType": "python"})
    outcome = await engine.execute_transition(
        "boomerang_to_researcher", task_id, "boomerang", handoff_message="Look into OAuth"
    )
    assert outcome.result.success is True
    assert outcome.execution.current_role_id == "researcher"
    assert outcome.execution.current_step_id == "researcher.research_planning"
    assert outcome.execution.recovery_attempts == 0
    assert engine.cache.get(task_id, "project") is None

    history = await engine.transitions.get_transition_history(task_id)
    assert [(h.from_role, h.to_role, h.message) for h in history] == [
        ("boomerang", "researcher", "Look into OAuth")
    ]
    task = await engine.repository.get_task(task_id)
    assert task.owner == "researcher"


@pytest.mark.asyncio
async def test_transition_requires_current_role(make_engine):
    engine = await make_engine(document=load_default_catalog())
    execution = await engine.create_execution("boomerang")
    with pytest.raises(InvalidRequestError):
        await engine.execute_transition(
            "architecture_to_implementation", execution.task_id, "architect"
        )
    validation = await engine.transitions.validate_transition(
        "nope", ExecutionContext(task_id=execution.task_id, role_id="boomerang")
    )
    assert validation.errors == ["Transition 'nope' not found"]


@pytest.mark.asyncio
async def test_repeated_failures_move_execution_to_failed(make_engine):
    engine = await make_engine(max_recovery_attempts=3)
    execution = await engine.create_execution("architect")
    task_id = execution.task_id

    for attempt in range(3):
        report = await engine.report_step_completion(
            task_id,
            "architect.context_review",
            "architect",
            "failure",
            {"error": f"lint failed {attempt}"},
        )
    failed = report.execution
    assert failed.phase == ExecutionPhase.FAILED
    assert failed.last_error["code"] == "STEP_FAILED"
    assert failed.last_error["message"] == "lint failed 2"
    assert failed.last_error["recoveryAttempts"] == 3

    guidance = await engine.get_guidance(task_id)
    assert guidance.status == ExecutionPhase.FAILED
    assert guidance.guidance is None
    assert guidance.error == failed.last_error

    with pytest.raises(InvalidRequestError):
        await engine.report_step_completion(
            task_id, "architect.context_review", "architect", "success"
        )

    resumed = await engine.resume_execution(execution.id)
    assert resumed.phase == ExecutionPhase.IN_PROGRESS
    assert resumed.recovery_attempts == 0
    assert resumed.last_error is None


@pytest.mark.asyncio
async def test_success_resets_recovery_attempts(make_engine):
    engine = await make_engine(max_recovery_attempts=3)
    execution = await engine.create_execution("architect")
    task_id = execution.task_id
    for _ in range(2):
        await engine.report_step_completion(
            task_id, "architect.context_review", "architect", "failure"
        )
    report = await engine.report_step_completion(
        task_id, "architect.context_review", "architect", "success"
    )
    assert report.execution.recovery_attempts == 0
    assert report.execution.phase == ExecutionPhase.IN_PROGRESS


@pytest.mark.asyncio
async def test_automated_mode_runs_to_completion(make_engine):
    engine = await make_engine(mode="AUTOMATED")
    execution = await engine.create_execution("architect")
    task_id = execution.task_id
    assert execution.execution_mode == ExecutionMode.AUTOMATED

    report = await engine.report_step_completion(
        task_id, "architect.context_review", "architect", "success"
    )
    assert report.execution.current_step_id == "architect.implementation_planning"

    await engine.report_step_completion(
        task_id, "architect.implementation_planning", "architect", "success"
    )
    report = await engine.report_step_completion(
        task_id, "architect.subtask_creation", "architect", "success"
    )
    assert report.transition is not None and report.transition.success
    assert report.execution.current_role_id == "builder"
    assert report.execution.current_step_id == "builder.build"
    assert report.awaiting_transition is False

    report = await engine.report_step_completion(task_id, "builder.build", "builder", "success")
    assert report.execution.phase == ExecutionPhase.COMPLETED
    assert report.execution.progress_percentage == 100
    assert report.execution.completed_at is not None
    task = await engine.repository.get_task(task_id)
    assert task.status == TaskStatus.COMPLETED
    assert await engine.get_active_executions() == []


@pytest.mark.asyncio
async def test_hybrid_mode_blocks_until_conditions_hold(make_engine):
    engine = await make_engine(mode="HYBRID")
    execution = await engine.create_execution("gated")
    task_id = execution.task_id

    report = await engine.report_step_completion(task_id, "gated.prepare", "gated", "success")
    blocked = report.execution
    assert blocked.current_step_id is None
    assert blocked.execution_state.pending_step_id == "gated.ship"
    assert blocked.execution_state.blocked_reasons == [
        "Condition 'needs_approval' failed: Missing required properties: approval"
    ]

    guidance = await engine.get_guidance(task_id)
    assert guidance.blocked_reasons == blocked.execution_state.blocked_reasons
    assert guidance.guidance.current_step.id == "gated.ship"
    assert guidance.guidance.condition_status.is_valid is False

    await engine.update_execution_context(execution.id, {"approval": "granted"})
    guidance = await engine.get_guidance(task_id)
    assert guidance.execution.current_step_id == "gated.ship"
    assert guidance.blocked_reasons == []


@pytest.mark.asyncio
async def test_create_execution_rules(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution("architect", task_id="T-42")
    assert execution.task_id == "T-42"
    task = await engine.repository.get_task("T-42")
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.owner == "architect"

    with pytest.raises(ExecutionExistsError):
        await engine.create_execution("architect", task_id="T-42")
    with pytest.raises(RoleNotFoundError):
        await engine.create_execution("astronaut")
    with pytest.raises(InvalidRequestError):
        await engine.create_execution("architect", execution_mode="TURBO")
    with pytest.raises(InvalidRequestError):
        await engine.create_execution("architect", execution_context={"blob": "x" * 20_000})

    assert (await engine.get_execution("T-42")).id == execution.id
    assert (await engine.get_execution(execution.id)).task_id == "T-42"


@pytest.mark.asyncio
async def test_execution_context_merge_and_lookup(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution(
        "architect", execution_context={"projectPath": "/srv/app"}
    )
    await engine.update_execution_context(execution.id, {"plan": {"summary": "split api"}})
    updated = await engine.update_execution_context(execution.id, {"plan": {"owner": "ana"}})
    assert updated.execution_context == {
        "projectPath": "/srv/app",
        "plan": {"summary": "split api", "owner": "ana"},
    }
    assert await engine.get_execution_context(execution.id, "plan.owner") == "ana"
    assert await engine.get_execution_context(execution.id, "missing") is None

    with pytest.raises(InvalidRequestError):
        await engine.update_execution_context(execution.id, {"blob": "x" * 20_000})


@pytest.mark.asyncio
async def test_update_execution_validation(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution("architect")

    moved = await engine.update_execution(
        execution.id, {"currentStepId": "architect.subtask_creation", "executionMode": "HYBRID"}
    )
    assert moved.current_step_id == "architect.subtask_creation"
    assert moved.execution_mode == ExecutionMode.HYBRID

    with pytest.raises(InvalidRequestError):
        await engine.update_execution(execution.id, {"currentRoleId": "builder"})
    with pytest.raises(InvalidRequestError):
        await engine.update_execution(execution.id, {"currentStepId": "builder.build"})
    with pytest.raises(StepNotFoundError):
        await engine.update_execution(execution.id, {"currentStepId": "architect.nope"})


@pytest.mark.asyncio
async def test_pause_and_complete(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution("architect")
    task_id = execution.task_id

    paused = await engine.pause_execution(execution.id)
    assert paused.phase == ExecutionPhase.PAUSED
    guidance = await engine.get_guidance(task_id)
    assert guidance.status == ExecutionPhase.PAUSED
    assert guidance.guidance is None
    with pytest.raises(InvalidRequestError):
        await engine.report_step_completion(
            task_id, "architect.context_review", "architect", "success"
        )
    await engine.resume_execution(execution.id)

    engine.cache.set(task_id, "task", {"name": "demo"})
    completed = await engine.complete_execution(execution.id)
    assert completed.phase == ExecutionPhase.COMPLETED
    assert completed.progress_percentage == 100
    assert engine.cache.get(task_id, "task") is None
    with pytest.raises(InvalidRequestError):
        await engine.pause_execution(execution.id)


@pytest.mark.asyncio
async def test_guidance_rejects_foreign_step(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution("architect")
    with pytest.raises(StepNotFoundError):
        await engine.get_guidance(execution.task_id, step_id="builder.build")


@pytest.mark.asyncio
async def test_compare_and_swap_retries_then_gives_up(make_engine):
    repository = FlakyRepository(conflicts=2)
    engine = await make_engine(repository=repository)
    execution = await engine.create_execution("architect")

    updated = await engine.update_execution_context(execution.id, {"a": 1})
    assert updated.execution_context == {"a": 1}
    assert repository.saves == 3

    repository.conflicts = 10
    repository.saves = 0
    with pytest.raises(ConcurrentModificationError):
        await engine.update_execution_context(execution.id, {"b": 2})
    assert repository.saves == 4


@pytest.mark.asyncio
async def test_concurrent_context_updates_are_serialized(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution("architect")
    await asyncio.gather(
        *(engine.update_execution_context(execution.id, {f"k{i}": i}) for i in range(5))
    )
    stored = await engine.get_execution(execution.id)
    assert stored.execution_context == {f"k{i}": i for i in range(5)}
    assert stored.version == 5


FORK_CATALOG = {
    "roles": [
        {"id": "architect", "priority": 1, "steps": [{"name": "plan", "sequenceNumber": 1}]},
        {"id": "builder", "priority": 2, "steps": [{"name": "build", "sequenceNumber": 1}]},
        {"id": "gated", "priority": 3, "steps": [{"name": "ship", "sequenceNumber": 1}]},
    ],
    "transitions": [
        {"fromRoleId": "architect", "toRoleId": "builder"},
        {"fromRoleId": "architect", "toRoleId": "gated"},
    ],
}


@pytest.mark.asyncio
async def test_concurrent_transitions_from_one_role_single_winner(make_engine, tmp_path):
    repository = SQLModelWorkflowRepository(f"sqlite+aiosqlite:///{tmp_path / 'wf.db'}")
    engine = await make_engine(repository=repository, document=parse_catalog(FORK_CATALOG))
    execution = await engine.create_execution("architect")
    task_id = execution.task_id

    outcomes = await asyncio.gather(
        engine.execute_transition("architect_to_builder", task_id, "architect"),
        engine.execute_transition("architect_to_gated", task_id, "architect"),
        return_exceptions=True,
    )
    winners = [o for o in outcomes if not isinstance(o, BaseException)]
    losers = [o for o in outcomes if isinstance(o, BaseException)]
    assert len(winners) == 1 and winners[0].result.success
    assert len(losers) == 1 and isinstance(losers[0], InvalidRequestError)

    new_role = winners[0].result.new_role_id
    stored = await engine.get_execution(execution.id)
    task = await repository.get_task(task_id)
    history = await engine.transitions.get_transition_history(task_id)
    assert stored.current_role_id == new_role
    assert task.current_role == task.owner == new_role
    assert [(r.from_role, r.to_role) for r in history] == [("architect", new_role)]
    await repository.dispose()


@pytest.mark.asyncio
async def test_failed_handoff_write_restores_execution_and_task(make_engine, monkeypatch):
    engine = await make_engine(document=parse_catalog(FORK_CATALOG))
    execution = await engine.create_execution("architect")
    task_id = execution.task_id

    async def broken(task, record):
        raise RuntimeError("disk full")

    monkeypatch.setattr(engine.repository, "record_handoff", broken)
    outcome = await engine.execute_transition("architect_to_builder", task_id, "architect")

    assert outcome.result.success is False
    assert "disk full" in outcome.result.message
    assert outcome.execution.current_role_id == "architect"
    assert outcome.execution.current_step_id == "architect.plan"
    assert outcome.execution.last_error["code"] == "TRANSITION_FAILED"
    assert outcome.execution.recovery_attempts == 1

    task = await engine.repository.get_task(task_id)
    assert task.current_role == task.owner == "architect"
    assert task.redelegation_count == 1
    assert await engine.transitions.get_transition_history(task_id) == []


@pytest.mark.asyncio
async def test_guidance_project_context_follows_project_path(make_engine, tmp_path):
    python_root = tmp_path / "py"
    python_root.mkdir()
    (python_root / "pyproject.toml").write_text("[project]\n")
    node_root = tmp_path / "node"
    node_root.mkdir()
    (node_root / "package.json").write_text("{}")

    engine = await make_engine()
    execution = await engine.create_execution("architect")
    first = await engine.get_guidance(execution.task_id, project_path=str(python_root))
    second = await engine.get_guidance(execution.task_id, project_path=str(node_root))

    assert first.guidance.project_context.project_path == str(python_root)
    assert first.guidance.project_context.project_type == "python"
    assert second.guidance.project_context.project_path == str(node_root)
    assert second.guidance.project_context.project_type == "node"
