"""Load and validate role catalogs from YAML documents."""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError

from ..conditions import PreviousStepCompletedLogic, WaypointModel
from ..errors import CatalogError
from ..models import Role, RoleTransition, WorkflowStep

logger = logging.getLogger(__name__)

DEFAULT_CATALOG = "default_catalog.yaml"


class CatalogDocument(WaypointModel):
    """Parsed catalog: roles with their steps plus the transitions between them."""

    roles: list[Role] = Field(default_factory=list)
    transitions: list[RoleTransition] = Field(default_factory=list)

    def steps(self) -> list[WorkflowStep]:
        return [step for role in self.roles for step in role.steps]

    def problems(self, strict: bool = False) -> list[str]:
        """Return every load-time inconsistency in the document."""
        problems: list[str] = []
        role_ids: set[str] = set()
        for role in self.roles:
            if role.id in role_ids:
                problems.append(f"Duplicate role id '{role.id}'")
            role_ids.add(role.id)

        step_ids: set[str] = set()
        for step in self.steps():
            if step.id in step_ids:
                problems.append(f"Duplicate step id '{step.id}'")
            step_ids.add(step.id)

        for step in self.steps():
            for condition in step.conditions:
                if condition.is_unknown:
                    message = (
                        f"Step '{step.id}' condition '{condition.name}' has "
                        f"unknown type '{condition.condition_type}'"
                    )
                    if strict:
                        problems.append(message)
                    else:
                        logger.warning(f"{message}; it will evaluate as valid")
                logic = condition.logic
                if (
                    isinstance(logic, PreviousStepCompletedLogic)
                    and logic.step_id
                    and logic.step_id not in step_ids
                ):
                    problems.append(
                        f"Step '{step.id}' condition '{condition.name}' references "
                        f"unknown step '{logic.step_id}'"
                    )

        transition_ids: set[str] = set()
        for transition in self.transitions:
            if transition.id in transition_ids:
                problems.append(f"Duplicate transition id '{transition.id}'")
            transition_ids.add(transition.id)
            for role_id in (transition.from_role_id, transition.to_role_id):
                if role_id not in role_ids:
                    problems.append(
                        f"Transition '{transition.id}' references unknown role '{role_id}'"
                    )
            for step_id in transition.conditions.required_steps_completed:
                if step_id not in step_ids:
                    problems.append(
                        f"Transition '{transition.id}' requires unknown step '{step_id}'"
                    )
        return problems


def parse_catalog(data: Any, strict: bool = False) -> CatalogDocument:
    """Validate a decoded catalog mapping.

    Raises:
        CatalogError: if the document does not validate or is inconsistent.
    """
    if not isinstance(data, dict):
        raise CatalogError("Catalog document must be a mapping")
    try:
        document = CatalogDocument.model_validate(data)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        raise CatalogError("Catalog document is invalid", problems) from exc
    problems = document.problems(strict=strict)
    if problems:
        raise CatalogError("Catalog document is inconsistent", problems)
    return document


def load_catalog(path: str | Path, strict: bool = False) -> CatalogDocument:
    """Load a catalog from a YAML file."""
    catalog_path = Path(path)
    if not catalog_path.exists():
        raise CatalogError(f"Catalog file not found: {catalog_path}")
    with open(catalog_path) as f:
        data = yaml.safe_load(f) or {}
    document = parse_catalog(data, strict=strict)
    logger.info(
        f"Loaded catalog {catalog_path} with {len(document.roles)} roles "
        f"and {len(document.transitions)} transitions"
    )
    return document


def load_default_catalog(strict: bool = False) -> CatalogDocument:
    """Load the catalog shipped with the package."""
    text = resources.files("waypoint.catalog").joinpath(DEFAULT_CATALOG).read_text()
    return parse_catalog(yaml.safe_load(text) or {}, strict=strict)
