"""Advisory guidance: what the external actor should do next."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import Field

from ..catalog.service import StepCatalog
from ..conditions import WaypointModel
from ..errors import RoleNotFoundError, StepNotFoundError
from ..models import ExecutionContext, Role, StepAction, WorkflowStep
from .cache import ContextCache
from .evaluator import ConditionEvaluator, ValidationSummary
from .workers import BlockingIOPool

logger = logging.getLogger(__name__)

PROJECT_MARKERS = {
    "pyproject.toml": "python",
    "setup.py": "python",
    "requirements.txt": "python",
    "package.json": "node",
    "Cargo.toml": "rust",
    "go.mod": "go",
    "pom.xml": "java",
}


class RoleSummary(WaypointModel):
    id: str
    name: str
    display_name: str
    description: str = ""


class ProjectContext(WaypointModel):
    project_path: Optional[str] = None
    project_type: str = "unknown"
    markers: list[str] = Field(default_factory=list)


class RuleEnforcement(WaypointModel):
    required_patterns: list[str] = Field(default_factory=list)
    anti_patterns: list[str] = Field(default_factory=list)
    compliance_checks: list[Any] = Field(default_factory=list)


class ReportingStatus(WaypointModel):
    should_trigger_report: bool = False
    report_type: Optional[str] = None
    report_template: Optional[str] = None


class WorkflowGuidance(WaypointModel):
    current_role: RoleSummary
    current_step: Optional[WorkflowStep] = None
    next_actions: list[StepAction] = Field(default_factory=list)
    project_context: ProjectContext = Field(default_factory=ProjectContext)
    quality_reminders: list[str] = Field(default_factory=list)
    rule_enforcement: RuleEnforcement = Field(default_factory=RuleEnforcement)
    reporting_status: ReportingStatus = Field(default_factory=ReportingStatus)
    condition_status: Optional[ValidationSummary] = None


def detect_project(project_path: Optional[str]) -> ProjectContext:
    root = Path(project_path) if project_path else Path.cwd()
    markers = sorted(name for name in PROJECT_MARKERS if (root / name).exists())
    project_type = PROJECT_MARKERS[markers[0]] if markers else "unknown"
    return ProjectContext(
        project_path=str(root), project_type=project_type, markers=markers
    )


class GuidanceGenerator:
    """Builds guidance payloads. It reads state but never changes it."""

    def __init__(
        self,
        catalog: StepCatalog,
        evaluator: ConditionEvaluator,
        cache: ContextCache,
        pool: BlockingIOPool,
    ) -> None:
        self.catalog = catalog
        self.evaluator = evaluator
        self.cache = cache
        self.pool = pool

    async def get_workflow_guidance(
        self, role_id: str, context: ExecutionContext
    ) -> WorkflowGuidance:
        role = await self.catalog.get_role(role_id)
        if role is None:
            raise RoleNotFoundError(role_id)
        step = await self._current_step(role, context)
        guidance = WorkflowGuidance(
            current_role=RoleSummary(
                id=role.id,
                name=role.name,
                display_name=role.display_name,
                description=role.description,
            ),
            current_step=step,
            project_context=await self.project_context(context),
            quality_reminders=list(role.capabilities.get("qualityReminders", [])),
        )
        if step is None:
            return guidance

        guidance.next_actions = list(step.actions)
        guidance.quality_reminders += [
            item for item in step.quality_checklist if item not in guidance.quality_reminders
        ]
        guidance.rule_enforcement = RuleEnforcement(
            **step.pattern_enforcement.model_dump()
        )
        guidance.reporting_status = ReportingStatus(
            should_trigger_report=step.trigger_report,
            report_type=step.report_type,
            report_template=step.report_template,
        )
        step_context = context.model_copy(update={"step_id": step.id})
        guidance.condition_status = await self.evaluator.validate_all(
            step.conditions, step_context
        )
        return guidance

    async def _current_step(
        self, role: Role, context: ExecutionContext
    ) -> WorkflowStep | None:
        if context.step_id:
            details = await self.catalog.get_step(context.step_id)
            if details is None or details.step.role_id != role.id:
                raise StepNotFoundError(context.step_id)
            return details.step
        return await self.catalog.next_available(role.id, context.task_id)

    async def project_context(self, context: ExecutionContext) -> ProjectContext:
        root = context.project_path or str(Path.cwd())

        async def fetch() -> dict:
            project = await self.pool.run(detect_project, root)
            return project.model_dump()

        # one slice per project root, a task may be guided against several
        data = await self.cache.get_or_fetch(context.task_id, f"project:{root}", fetch)
        return ProjectContext.model_validate(data)
