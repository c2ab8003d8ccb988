import pytest
import pytest_asyncio
from sqlalchemy import select

from waypoint.catalog import load_default_catalog
from waypoint.errors import (
    ConcurrentModificationError,
    StepAlreadyInProgressError,
    StorageError,
)
from waypoint.models import (
    DelegationRecord,
    ExecutionPhase,
    ExecutionState,
    StepStatus,
    Task,
    TaskStatus,
    WorkflowExecution,
)
from waypoint.persistence import InMemoryWorkflowRepository, SQLModelWorkflowRepository
from waypoint.persistence.tables import StepProgressRow


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowRepository()
        return
    repository = SQLModelWorkflowRepository(f"sqlite+aiosqlite:///{tmp_path / 'wf.db'}")
    yield repository
    await repository.dispose()


@pytest.mark.asyncio
async def test_task_crud(repo):
    task = await repo.create_task(Task(id="t1", name="Add login"))
    assert task.status == TaskStatus.NOT_STARTED

    task.status = TaskStatus.IN_PROGRESS
    task.current_role = "architect"
    await repo.save_task(task)

    stored = await repo.get_task("t1")
    assert stored.status == TaskStatus.IN_PROGRESS
    assert stored.current_role == "architect"
    assert stored.created_at.tzinfo is not None
    assert await repo.get_task("missing") is None


@pytest.mark.asyncio
async def test_catalog_round_trip(repo):
    document = load_default_catalog()
    await repo.save_catalog(document.roles, document.transitions)

    roles = await repo.list_roles()
    assert [r.id for r in roles] == [r.id for r in document.roles]

    role = await repo.get_role("boomerang")
    assert [s.sequence_number for s in role.steps] == [1, 2, 3]
    assert role.capabilities["qualityReminders"]

    step = await repo.get_step("boomerang.task_analysis")
    assert step.role_id == "boomerang"
    assert step.conditions[0].logic.required_properties == ["taskId"]

    assert len(await repo.list_steps("architect")) == 3
    outgoing = await repo.list_transitions("code-review")
    assert {t.id for t in outgoing} == {"review_to_implementation", "review_to_completion"}
    assert (await repo.get_transition("boomerang_to_researcher")).to_role_id == "researcher"

    # replacing the catalog drops the old rows
    await repo.save_catalog(document.roles[:1], [])
    assert [r.id for r in await repo.list_roles()] == ["boomerang"]
    assert await repo.list_transitions() == []


@pytest.mark.asyncio
async def test_step_progress_single_open_attempt(repo):
    await repo.start_step_progress("t1", "s1", "r1", {"a": 1})
    with pytest.raises(StepAlreadyInProgressError):
        await repo.start_step_progress("t1", "s1", "r1")

    done = await repo.finish_step_progress("t1", "s1", "r1", StepStatus.COMPLETED)
    assert done.status == StepStatus.COMPLETED
    assert done.execution_data == {"a": 1}

    await repo.start_step_progress("t1", "s1", "r1")
    await repo.finish_step_progress(
        "t1", "s1", "r1", StepStatus.FAILED, error_details={"message": "boom"}
    )

    rows = await repo.list_step_progress("t1")
    assert [r.status for r in rows] == [StepStatus.COMPLETED, StepStatus.FAILED]
    completed = await repo.list_step_progress("t1", status=StepStatus.COMPLETED)
    assert len(completed) == 1
    assert rows[1].error_details == {"message": "boom"}


@pytest.mark.asyncio
async def test_finish_without_start_appends_row(repo):
    row = await repo.finish_step_progress("t1", "s9", "r1", StepStatus.COMPLETED)
    assert row.status == StepStatus.COMPLETED
    assert row.started_at is not None


@pytest.mark.asyncio
async def test_execution_compare_and_swap(repo):
    execution = await repo.create_execution(
        WorkflowExecution(
            task_id="t1",
            current_role_id="architect",
            execution_state=ExecutionState(phase=ExecutionPhase.BOOTSTRAPPED),
        )
    )
    assert execution.version == 0

    first = await repo.get_execution(execution.id)
    second = await repo.get_execution(execution.id)

    first.progress_percentage = 30
    saved = await repo.save_execution(first, expected_version=0)
    assert saved.version == 1

    second.progress_percentage = 10
    with pytest.raises(ConcurrentModificationError):
        await repo.save_execution(second, expected_version=0)

    stored = await repo.get_execution_for_task("t1")
    assert stored.version == 1
    assert stored.progress_percentage == 30
    assert stored.phase == ExecutionPhase.BOOTSTRAPPED


@pytest.mark.asyncio
async def test_active_execution_listing(repo):
    open_one = await repo.create_execution(
        WorkflowExecution(task_id="t1", current_role_id="architect")
    )
    closed = await repo.create_execution(
        WorkflowExecution(task_id="t2", current_role_id="architect")
    )
    closed.execution_state.phase = ExecutionPhase.COMPLETED
    closed.completed_at = closed.created_at
    await repo.save_execution(closed, expected_version=0)

    active = await repo.list_executions(active_only=True)
    assert [e.id for e in active] == [open_one.id]
    assert len(await repo.list_executions()) == 2


@pytest.mark.asyncio
async def test_delegations_newest_first(repo):
    await repo.add_delegation(
        DelegationRecord(task_id="t1", from_role="boomerang", to_role="architect")
    )
    await repo.add_delegation(
        DelegationRecord(task_id="t1", from_role="architect", to_role="senior-developer")
    )
    records = await repo.list_delegations("t1")
    assert [r.to_role for r in records] == ["senior-developer", "architect"]
    assert records[0].id is not None
    assert await repo.list_delegations("t2") == []


@pytest.mark.asyncio
async def test_record_handoff_writes_task_and_delegation_together(repo):
    await repo.create_task(Task(id="t1", owner="architect", current_role="architect"))
    task = await repo.get_task("t1")
    task.owner = "builder"
    task.current_role = "builder"
    record = await repo.record_handoff(
        task, DelegationRecord(task_id="t1", from_role="architect", to_role="builder")
    )
    assert record.id is not None
    stored = await repo.get_task("t1")
    assert stored.owner == stored.current_role == "builder"
    assert [r.to_role for r in await repo.list_delegations("t1")] == ["builder"]

    with pytest.raises(StorageError):
        await repo.record_handoff(
            Task(id="ghost", owner="builder"),
            DelegationRecord(task_id="ghost", from_role="architect", to_role="builder"),
        )
    assert await repo.get_task("ghost") is None
    assert await repo.list_delegations("ghost") == []


@pytest.mark.asyncio
async def test_sqlite_readonly_query(tmp_path):
    repo = SQLModelWorkflowRepository(f"sqlite+aiosqlite:///{tmp_path / 'wf.db'}")
    await repo.create_task(Task(id="t1", status=TaskStatus.IN_PROGRESS))
    rows = await repo.run_readonly_query(
        "SELECT id, status FROM tasks WHERE status = :status", {"status": "in-progress"}
    )
    assert rows == [{"id": "t1", "status": "in-progress"}]
    assert await repo.run_readonly_query(
        "SELECT id FROM tasks WHERE id = :id", {"id": "nope"}
    ) == []
    await repo.dispose()


@pytest.mark.asyncio
async def test_sqlite_partial_unique_index(tmp_path):
    repo = SQLModelWorkflowRepository(f"sqlite+aiosqlite:///{tmp_path / 'wf.db'}")
    await repo.start_step_progress("t1", "s1", "r1")

    async with repo.session() as session:
        session.add(
            StepProgressRow(task_id="t1", step_id="s1", role_id="r1", status="IN_PROGRESS")
        )
        with pytest.raises(Exception):
            await session.commit()
        await session.rollback()

    async with repo.session() as session:
        session.add(
            StepProgressRow(task_id="t1", step_id="s1", role_id="r1", status="FAILED")
        )
        await session.commit()
        result = await session.execute(select(StepProgressRow))
        assert len(result.scalars().all()) == 2
    await repo.dispose()
