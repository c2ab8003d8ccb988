import asyncio
import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

import waypoint.persistence as persistence
from waypoint.cli import app
from waypoint.models import WorkflowExecution
from waypoint.persistence import InMemoryWorkflowRepository

DEFAULT_CATALOG = Path(__file__).resolve().parents[2] / "waypoint" / "catalog" / "default_catalog.yaml"


def _setup_repo(monkeypatch) -> InMemoryWorkflowRepository:
    monkeypatch.delenv("WAYPOINT_CONFIG", raising=False)
    monkeypatch.delenv("WAYPOINT_DATABASE_URL", raising=False)
    monkeypatch.delenv("WAYPOINT_CATALOG", raising=False)
    repo = InMemoryWorkflowRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    return repo


def test_catalog_validate_reports_counts():
    runner = CliRunner()
    result = runner.invoke(app, ["catalog", "validate", str(DEFAULT_CATALOG), "--strict"])
    assert result.exit_code == 0, result.stdout
    assert "Catalog OK: 5 roles, 15 steps, 7 transitions" in result.stdout


def test_catalog_validate_rejects_bad_file(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "roles": [{"id": "solo", "steps": [{"name": "a", "sequenceNumber": 1}]}],
                "transitions": [{"fromRoleId": "solo", "toRoleId": "ghost"}],
            }
        )
    )
    runner = CliRunner()
    result = runner.invoke(app, ["catalog", "validate", str(path)])
    assert result.exit_code == 1
    assert "ghost" in result.stdout


def test_execution_list_and_show(monkeypatch):
    repo = _setup_repo(monkeypatch)
    runner = CliRunner()

    empty = runner.invoke(app, ["execution", "list"])
    assert empty.exit_code == 0
    assert "No executions found" in empty.stdout

    execution = asyncio.run(
        repo.create_execution(WorkflowExecution(task_id="t1", current_role_id="architect"))
    )
    listed = runner.invoke(app, ["execution", "list"])
    assert execution.id in listed.stdout
    assert "architect" in listed.stdout

    shown = runner.invoke(app, ["execution", "show", "t1"])
    assert shown.exit_code == 0
    assert json.loads(shown.stdout)["currentRoleId"] == "architect"

    missing = runner.invoke(app, ["execution", "show", "nope"])
    assert missing.exit_code == 1
    assert "Execution not found" in missing.stdout


def test_call_dispatches_operations(monkeypatch):
    _setup_repo(monkeypatch)
    runner = CliRunner()

    created = runner.invoke(
        app, ["call", "create_execution", "--payload", '{"roleName": "architect", "taskId": "t9"}']
    )
    assert created.exit_code == 0, created.stdout
    body = json.loads(created.stdout)
    assert body["success"] is True
    assert body["data"]["currentStepId"] == "architect.context_review"

    failed = runner.invoke(app, ["call", "get_execution", "--payload", '{"taskId": "zzz"}'])
    assert failed.exit_code == 1
    assert json.loads(failed.stdout)["error"]["code"] == "NOT_FOUND"

    invalid = runner.invoke(app, ["call", "get_execution", "--payload", "{not json"])
    assert invalid.exit_code == 1
    assert "Invalid JSON payload" in invalid.stdout


def test_catalog_show_lists_roles(monkeypatch):
    _setup_repo(monkeypatch)
    runner = CliRunner()
    result = runner.invoke(app, ["catalog", "show", "--role", "code-review"])
    assert result.exit_code == 0, result.stdout
    assert "code-review" in result.stdout
    assert "review_to_completion" in result.stdout
    assert "Boomerang" not in result.stdout
