"""Command line interface for the waypoint engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from waypoint.catalog import CatalogDocument, load_catalog, load_default_catalog
from waypoint.config import WaypointConfig, load_config
from waypoint.errors import CatalogError
from waypoint.operations import WorkflowOperations
from waypoint.persistence import WorkflowRepository, get_repository

app = typer.Typer(help="CLI for waypoint workflows")

# Command groups
catalog_app = typer.Typer(help="Commands for managing the role catalog")
execution_app = typer.Typer(help="Commands for inspecting executions")

app.add_typer(catalog_app, name="catalog")
app.add_typer(execution_app, name="execution")

_state: dict[str, Optional[str]] = {"config": None}


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level"),
    config: Optional[Path] = typer.Option(None, help="Path to waypoint.yaml"),
) -> None:
    """Waypoint CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = str(config) if config else None


def _config() -> WaypointConfig:
    return load_config(_state["config"])


def _repository() -> WorkflowRepository:
    if _state["config"]:
        return get_repository(config=_config())
    return get_repository()


def _print_problems(exc: CatalogError) -> None:
    typer.secho(str(exc), fg=typer.colors.RED)
    for problem in exc.problems:
        typer.secho(f"  - {problem}", fg=typer.colors.RED)


@catalog_app.command("validate")
def catalog_validate(
    path: Path,
    strict: bool = typer.Option(False, help="Reject unknown condition types"),
) -> None:
    """
    Validate a catalog file without installing it.

    Example:
        waypoint catalog validate ./catalog.yaml --strict
    """
    try:
        document = load_catalog(path, strict=strict)
    except CatalogError as exc:
        _print_problems(exc)
        raise typer.Exit(code=1)
    steps = document.steps()
    typer.echo(
        f"Catalog OK: {len(document.roles)} roles, {len(steps)} steps, "
        f"{len(document.transitions)} transitions"
    )


@catalog_app.command("install")
def catalog_install(path: Optional[Path] = typer.Argument(None)) -> None:
    """Install a catalog (or the packaged default) into the configured database."""
    config = _config()
    try:
        if path is not None:
            document = load_catalog(path, strict=config.strict_catalog)
        else:
            document = load_default_catalog(strict=config.strict_catalog)
    except CatalogError as exc:
        _print_problems(exc)
        raise typer.Exit(code=1)

    async def _install(document: CatalogDocument) -> None:
        repository = _repository()
        await repository.save_catalog(document.roles, document.transitions)

    asyncio.run(_install(document))
    typer.echo(f"Installed {len(document.roles)} roles")


@catalog_app.command("show")
def catalog_show(role: Optional[str] = typer.Option(None, help="Only show this role")) -> None:
    """List roles and their steps."""

    async def _show() -> None:
        ops = await WorkflowOperations.create(_config(), repository=_repository())
        roles = await ops.engine.catalog.list_roles()
        for item in roles:
            if role and item.id != role:
                continue
            typer.echo(f"{item.id} - {item.display_name}")
            for step in item.steps:
                marker = "*" if step.is_required else " "
                typer.echo(f"  {marker}{step.sequence_number}. {step.id} ({step.step_type})")
            for transition in await ops.engine.catalog.list_transitions(item.id):
                typer.echo(f"  -> {transition.to_role_id} via {transition.id}")

    asyncio.run(_show())


@execution_app.command("list")
def execution_list(
    all_executions: bool = typer.Option(False, "--all", help="Include completed executions"),
) -> None:
    """List executions, newest first."""

    async def _list() -> None:
        repository = _repository()
        executions = await repository.list_executions(active_only=not all_executions)
        if not executions:
            typer.echo("No executions found")
            return
        for execution in executions:
            typer.echo(
                f"{execution.id}\t{execution.task_id}\t{execution.current_role_id}\t"
                f"{execution.phase.value}\t{execution.progress_percentage}%"
            )

    asyncio.run(_list())


@execution_app.command("show")
def execution_show(task_id: str) -> None:
    """Show the execution of a task."""

    async def _show() -> None:
        repository = _repository()
        execution = await repository.get_execution_for_task(task_id)
        if execution is None:
            typer.echo("Execution not found")
            raise typer.Exit(code=1)
        typer.echo(
            json.dumps(execution.model_dump(by_alias=True, mode="json"), indent=2)
        )

    asyncio.run(_show())


@app.command("call")
def call(
    operation: str,
    payload: str = typer.Option("{}", help="JSON request payload"),
) -> None:
    """
    Run one engine operation and print its JSON result.

    Example:
        waypoint call create_execution --payload '{"roleName": "architect"}'
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _call():
        ops = await WorkflowOperations.create(_config(), repository=_repository())
        return await ops.dispatch(operation, data)

    result = asyncio.run(_call())
    typer.echo(json.dumps(result.model_dump(by_alias=True, mode="json"), indent=2))
    if not result.success:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
