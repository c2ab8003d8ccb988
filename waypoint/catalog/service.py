"""Read-only queries over the role and step catalog."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Awaitable, Iterable, Optional, TypeVar

from pydantic import Field

from ..conditions import WaypointModel
from ..models import Role, RoleTransition, StepProgress, StepStatus, WorkflowStep
from ..persistence.repository import WorkflowRepository
from .loader import CatalogDocument

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepFilter(WaypointModel):
    role_id: Optional[str] = None
    step_type: Optional[str] = None
    is_required: Optional[bool] = None
    trigger_report: Optional[bool] = None
    min_sequence: Optional[int] = None
    max_sequence: Optional[int] = None

    def matches(self, step: WorkflowStep) -> bool:
        if self.role_id is not None and step.role_id != self.role_id:
            return False
        if self.step_type is not None and step.step_type != self.step_type:
            return False
        if self.is_required is not None and step.is_required != self.is_required:
            return False
        if (
            self.trigger_report is not None
            and step.trigger_report != self.trigger_report
        ):
            return False
        if self.min_sequence is not None and step.sequence_number < self.min_sequence:
            return False
        if self.max_sequence is not None and step.sequence_number > self.max_sequence:
            return False
        return True


class StepDetails(WaypointModel):
    """A step plus whatever related records were requested."""

    step: WorkflowStep
    role: Optional[Role] = None
    progress: list[StepProgress] = Field(default_factory=list)


class CatalogStatistics(WaypointModel):
    total_steps: int = 0
    by_role: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)
    required_steps: int = 0
    report_steps: int = 0


class StepCatalog:
    """Query facade over the catalog stored in a ``WorkflowRepository``.

    Every query degrades to an empty result (or ``None``) when storage fails,
    logging a warning instead of propagating the error.
    """

    INCLUDE_OPTIONS = ("conditions", "actions", "progress", "role")

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def _read(self, what: str, call: Awaitable[T], default: T) -> T:
        try:
            return await call
        except Exception as exc:
            logger.warning(f"Catalog query '{what}' failed: {exc}")
            return default

    async def install(self, document: CatalogDocument) -> None:
        """Replace the stored catalog with ``document``."""
        await self.repository.save_catalog(document.roles, document.transitions)
        logger.info(f"Installed catalog with {len(document.roles)} roles")

    # ------------------------------------------------------------------
    async def get_role(self, role_id: str) -> Role | None:
        return await self._read("get_role", self.repository.get_role(role_id), None)

    async def list_roles(self) -> list[Role]:
        return await self._read("list_roles", self.repository.list_roles(), [])

    async def get_step(
        self,
        step_id: str,
        include: Iterable[str] = ("conditions", "actions"),
        task_id: Optional[str] = None,
    ) -> StepDetails | None:
        """Fetch a step, eagerly attaching the related records named in ``include``."""
        step = await self._read("get_step", self.repository.get_step(step_id), None)
        if step is None:
            return None
        include = set(include)
        if "conditions" not in include:
            step.conditions = []
        if "actions" not in include:
            step.actions = []
        details = StepDetails(step=step)
        if "role" in include:
            details.role = await self.get_role(step.role_id)
        if "progress" in include and task_id is not None:
            details.progress = await self._read(
                "get_step.progress",
                self.repository.list_step_progress(
                    task_id, role_id=step.role_id, step_id=step.id
                ),
                [],
            )
        return details

    async def list_steps(self, step_filter: Optional[StepFilter] = None) -> list[WorkflowStep]:
        step_filter = step_filter or StepFilter()
        steps = await self._read(
            "list_steps", self.repository.list_steps(step_filter.role_id), []
        )
        return [step for step in steps if step_filter.matches(step)]

    async def get_steps(self, step_ids: Iterable[str]) -> list[WorkflowStep]:
        """Batch lookup; unknown ids are skipped and request order is kept."""
        wanted = list(step_ids)
        by_id = {step.id: step for step in await self.list_steps()}
        return [by_id[step_id] for step_id in wanted if step_id in by_id]

    async def next_in_sequence(
        self, role_id: str, current_sequence: int = 0
    ) -> WorkflowStep | None:
        for step in await self.list_steps(StepFilter(role_id=role_id)):
            if step.sequence_number > current_sequence:
                return step
        return None

    async def completed_step_ids(
        self, task_id: str, role_id: Optional[str] = None
    ) -> list[str]:
        rows = await self._read(
            "completed_step_ids",
            self.repository.list_step_progress(
                task_id, role_id=role_id, status=StepStatus.COMPLETED
            ),
            [],
        )
        return list(dict.fromkeys(row.step_id for row in rows))

    async def next_available(self, role_id: str, task_id: str) -> WorkflowStep | None:
        """First step of ``role_id`` the task has not completed yet."""
        completed = set(await self.completed_step_ids(task_id, role_id))
        for step in await self.list_steps(StepFilter(role_id=role_id)):
            if step.id not in completed:
                return step
        return None

    async def search(self, text: str) -> list[WorkflowStep]:
        needle = text.strip().lower()
        if not needle:
            return []
        return [
            step
            for step in await self.list_steps()
            if needle in step.name.lower()
            or needle in step.display_name.lower()
            or needle in step.description.lower()
        ]

    async def count_steps(self, role_id: Optional[str] = None) -> int:
        return len(await self.list_steps(StepFilter(role_id=role_id)))

    async def statistics(self) -> CatalogStatistics:
        steps = await self.list_steps()
        return CatalogStatistics(
            total_steps=len(steps),
            by_role=dict(Counter(step.role_id for step in steps)),
            by_type=dict(Counter(step.step_type for step in steps)),
            required_steps=sum(1 for step in steps if step.is_required),
            report_steps=sum(1 for step in steps if step.trigger_report),
        )

    # ------------------------------------------------------------------
    async def get_transition(self, transition_id: str) -> RoleTransition | None:
        return await self._read(
            "get_transition", self.repository.get_transition(transition_id), None
        )

    async def list_transitions(
        self, from_role_id: Optional[str] = None, active_only: bool = True
    ) -> list[RoleTransition]:
        transitions = await self._read(
            "list_transitions", self.repository.list_transitions(from_role_id), []
        )
        return [t for t in transitions if t.is_active or not active_only]
