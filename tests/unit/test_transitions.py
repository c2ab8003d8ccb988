import pytest

from waypoint.catalog import parse_catalog
from waypoint.models import ExecutionContext, StepStatus

GATED_HANDOFF = {
    "roles": [
        {"id": "a", "steps": [{"name": "one", "sequenceNumber": 1}]},
        {"id": "b", "steps": [{"name": "two", "sequenceNumber": 1}]},
    ],
    "transitions": [
        {
            "fromRoleId": "a",
            "toRoleId": "b",
            "conditions": {"minimumTimeInRole": 3_600_000},
            "requirements": {
                "requiredDeliverables": ["file:PLAN.md", "step:a.one"],
                "qualityGates": ["test_coverage", "documentation", "mystery_gate"],
            },
        }
    ],
}


@pytest.mark.asyncio
async def test_quality_gates_and_deliverables(make_engine, tmp_path):
    engine = await make_engine(document=parse_catalog(GATED_HANDOFF))
    execution = await engine.create_execution("a")
    task_id = execution.task_id
    context = ExecutionContext(
        task_id=task_id,
        role_id="a",
        project_path=str(tmp_path),
        execution_data={"qualityGates": {"test_coverage": 72}},
    )

    validation = await engine.transitions.validate_transition("a_to_b", context)
    assert validation.valid is False
    assert set(validation.errors) == {
        "Required deliverable 'file:PLAN.md' not found",
        "Required deliverable 'step:a.one' not found",
        "Quality gate 'test_coverage' not passed",
        "Quality gate 'documentation' not passed",
    }
    assert "Unknown quality gate 'mystery_gate' skipped" in validation.warnings
    assert any(w.startswith("Minimum time in role not met") for w in validation.warnings)

    (tmp_path / "PLAN.md").write_text("# Plan\n")
    (tmp_path / "README.md").write_text("Usage notes. " * 20)
    await engine.progress.complete_step(task_id, "a.one", "a", "success")
    context = context.model_copy(
        update={"execution_data": {"qualityGates": {"test_coverage": {"passed": True}}}}
    )

    validation = await engine.transitions.validate_transition("a_to_b", context)
    assert validation.valid, validation.errors
    assert "Unknown quality gate 'mystery_gate' skipped" in validation.warnings


@pytest.mark.asyncio
async def test_documentation_gate_prefers_explicit_evidence(make_engine, tmp_path):
    document = {
        "roles": GATED_HANDOFF["roles"],
        "transitions": [
            {
                "fromRoleId": "a",
                "toRoleId": "b",
                "requirements": {"qualityGates": ["documentation"]},
            }
        ],
    }
    engine = await make_engine(document=parse_catalog(document))
    execution = await engine.create_execution("a")
    (tmp_path / "README.md").write_text("Usage notes. " * 20)
    context = ExecutionContext(
        task_id=execution.task_id,
        role_id="a",
        project_path=str(tmp_path),
        execution_data={"qualityGates": {"documentation": False}},
    )

    validation = await engine.transitions.validate_transition("a_to_b", context)
    assert validation.errors == ["Quality gate 'documentation' not passed"]

    context = context.model_copy(update={"execution_data": {}})
    validation = await engine.transitions.validate_transition("a_to_b", context)
    assert validation.valid, validation.errors


@pytest.mark.asyncio
async def test_report_deliverable_needs_completed_report_step(make_engine):
    document = {
        "roles": [
            {
                "id": "a",
                "steps": [
                    {
                        "name": "write_up",
                        "sequenceNumber": 1,
                        "triggerReport": True,
                        "reportType": "research",
                    }
                ],
            },
            {"id": "b", "steps": [{"name": "two", "sequenceNumber": 1}]},
        ],
        "transitions": [
            {
                "fromRoleId": "a",
                "toRoleId": "b",
                "requirements": {"requiredDeliverables": ["report:research"]},
            }
        ],
    }
    engine = await make_engine(document=parse_catalog(document))
    execution = await engine.create_execution("a")
    context = ExecutionContext(task_id=execution.task_id, role_id="a")

    validation = await engine.transitions.validate_transition("a_to_b", context)
    assert validation.errors == ["Required deliverable 'report:research' not found"]

    await engine.progress.complete_step(execution.task_id, "a.write_up", "a", "success")
    rows = await engine.progress.history(execution.task_id)
    assert rows[-1].status == StepStatus.COMPLETED
    validation = await engine.transitions.validate_transition("a_to_b", context)
    assert validation.valid


@pytest.mark.asyncio
async def test_transition_from_wrong_role_is_invalid(make_engine):
    engine = await make_engine()
    execution = await engine.create_execution("builder")
    context = ExecutionContext(task_id=execution.task_id, role_id="builder")
    validation = await engine.transitions.validate_transition(
        "architecture_to_implementation", context
    )
    assert (
        "Transition 'architecture_to_implementation' starts from role 'architect', not 'builder'"
        in validation.errors
    )
    assert await engine.transitions.get_recommended_transitions("builder", context) == []


@pytest.mark.asyncio
async def test_execute_transition_for_unknown_task_fails(make_engine):
    document = {
        "roles": GATED_HANDOFF["roles"],
        "transitions": [{"fromRoleId": "a", "toRoleId": "b"}],
    }
    engine = await make_engine(document=parse_catalog(document))
    context = ExecutionContext(task_id="ghost", role_id="a")

    result = await engine.transitions.execute_transition("a_to_b", context)
    assert result.success is False
    assert result.message == "Transition execution failed: Task 'ghost' not found"
    assert await engine.transitions.get_transition_history("ghost") == []
