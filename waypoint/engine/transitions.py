"""Role transitions: availability, validation, recommendation and execution."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import Field

from ..catalog.service import StepCatalog
from ..conditions import WaypointModel
from ..config import EngineConfig
from ..constants import CANONICAL_TRANSITIONS
from ..errors import RoleNotFoundError, TaskNotFoundError
from ..models import (
    DelegationRecord,
    ExecutionContext,
    RoleTransition,
    StepStatus,
    utc_now,
)
from ..persistence.repository import WorkflowRepository
from .progress import StepProgressTracker
from .workers import BlockingIOPool

logger = logging.getLogger(__name__)

KNOWN_QUALITY_GATES = (
    "code_quality",
    "test_coverage",
    "security",
    "documentation",
    "peer_review",
)
MIN_TEST_COVERAGE = 80.0
MIN_README_LENGTH = 100


class TransitionValidation(WaypointModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class TransitionResult(WaypointModel):
    success: bool
    message: str
    transition_id: Optional[str] = None
    new_role_id: Optional[str] = None


class RecommendedTransition(RoleTransition):
    recommendation_score: int = 0


def _gate_passed(evidence: Any) -> Optional[bool]:
    if evidence is None:
        return None
    if isinstance(evidence, bool):
        return evidence
    if isinstance(evidence, (int, float)):
        return evidence >= MIN_TEST_COVERAGE
    if isinstance(evidence, str):
        return evidence.strip().lower() in ("passed", "pass", "true", "ok", "approved")
    if isinstance(evidence, dict):
        return _gate_passed(evidence.get("passed", evidence.get("status")))
    return False


class RoleTransitionEngine:
    """Moves a task between roles along catalog-declared edges only."""

    def __init__(
        self,
        repository: WorkflowRepository,
        catalog: StepCatalog,
        progress: StepProgressTracker,
        pool: BlockingIOPool,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.progress = progress
        self.pool = pool
        self.config = config or EngineConfig()

    async def get_available_transitions(
        self, from_role_id: str, context: Optional[ExecutionContext] = None
    ) -> list[RoleTransition]:
        if await self.catalog.get_role(from_role_id) is None:
            raise RoleNotFoundError(from_role_id)
        return await self.catalog.list_transitions(from_role_id)

    async def get_recommended_transitions(
        self, from_role_id: str, context: ExecutionContext
    ) -> list[RecommendedTransition]:
        """Valid outgoing edges, best first.

        Score: 50, plus 30 when every required step of the role is done,
        plus 20 for the canonical forward edges.
        """
        available = await self.get_available_transitions(from_role_id, context)
        role = await self.catalog.get_role(from_role_id)
        completed = set(await self.progress.completed_step_ids(context.task_id))
        role_done = role is not None and all(
            step.id in completed for step in role.steps if step.is_required
        )
        scored: list[RecommendedTransition] = []
        for transition in available:
            validation = await self.validate_transition(transition.id, context)
            if not validation.valid:
                continue
            score = 50
            if role_done:
                score += 30
            if transition.transition_name in CANONICAL_TRANSITIONS:
                score += 20
            scored.append(
                RecommendedTransition(
                    **transition.model_dump(), recommendation_score=score
                )
            )
        scored.sort(key=lambda t: (-t.recommendation_score, t.id))
        return scored[: self.config.recommended_transition_limit]

    async def validate_transition(
        self, transition_id: str, context: ExecutionContext
    ) -> TransitionValidation:
        """Check every condition and requirement of a transition without side effects."""
        try:
            return await self._validate(transition_id, context)
        except Exception as exc:
            logger.error(f"Error validating transition {transition_id}: {exc}")
            return TransitionValidation(
                valid=False, errors=[f"Validation error: {exc}"]
            )

    async def _validate(
        self, transition_id: str, context: ExecutionContext
    ) -> TransitionValidation:
        transition = await self.catalog.get_transition(transition_id)
        if transition is None:
            return TransitionValidation(
                valid=False, errors=[f"Transition '{transition_id}' not found"]
            )
        errors: list[str] = []
        warnings: list[str] = []
        if not transition.is_active:
            errors.append(f"Transition '{transition_id}' is not active")
        if context.role_id != transition.from_role_id:
            errors.append(
                f"Transition '{transition_id}' starts from role "
                f"'{transition.from_role_id}', not '{context.role_id}'"
            )

        conditions = transition.conditions
        completed = set(await self.progress.completed_step_ids(context.task_id))
        required_steps = list(conditions.required_steps_completed)
        if conditions.all_required_steps_completed:
            role = await self.catalog.get_role(transition.from_role_id)
            if role is not None:
                required_steps += [s.id for s in role.steps if s.is_required]
        for step_id in dict.fromkeys(required_steps):
            if step_id not in completed:
                errors.append(f"Required step '{step_id}' not completed")

        if conditions.required_task_status:
            task = await self.repository.get_task(context.task_id)
            if task is None or task.status.value != conditions.required_task_status:
                errors.append(
                    f"Task status must be '{conditions.required_task_status}'"
                )

        if conditions.minimum_time_in_role:
            elapsed = await self._time_in_role_ms(context.task_id)
            if elapsed < conditions.minimum_time_in_role:
                warnings.append(
                    f"Minimum time in role not met ({elapsed}ms < "
                    f"{conditions.minimum_time_in_role}ms)"
                )

        requirements = transition.requirements
        for deliverable in requirements.required_deliverables:
            if not await self._deliverable_exists(deliverable, context, completed):
                errors.append(f"Required deliverable '{deliverable}' not found")
        for gate in requirements.quality_gates:
            passed = await self._quality_gate(gate, context)
            if passed is None:
                warnings.append(f"Unknown quality gate '{gate}' skipped")
            elif not passed:
                errors.append(f"Quality gate '{gate}' not passed")

        return TransitionValidation(valid=not errors, errors=errors, warnings=warnings)

    async def execute_transition(
        self,
        transition_id: str,
        context: ExecutionContext,
        handoff_message: Optional[str] = None,
        claim: Optional[Callable[[RoleTransition], Awaitable[Any]]] = None,
    ) -> TransitionResult:
        """Revalidate, then hand the task to the target role.

        ``claim`` runs after validation passes and before anything is
        written; it may raise to stop a caller that lost the task to a
        concurrent handoff. Apart from that the method never raises: the
        task owner and the delegation record are written together or not at
        all, and every failure comes back as ``success=False``.
        """
        validation = await self.validate_transition(transition_id, context)
        if not validation.valid:
            await self._count_redelegation(context.task_id)
            return TransitionResult(
                success=False,
                transition_id=transition_id,
                message=f"Transition validation failed: {', '.join(validation.errors)}",
            )
        transition = await self.catalog.get_transition(transition_id)
        if transition is None:
            return TransitionResult(
                success=False,
                transition_id=transition_id,
                message=f"Transition '{transition_id}' disappeared during execution",
            )
        if claim is not None:
            await claim(transition)
        try:
            task = await self.repository.get_task(context.task_id)
            if task is None:
                raise TaskNotFoundError(context.task_id)
            task.owner = transition.to_role_id
            task.current_role = transition.to_role_id
            await self.repository.record_handoff(
                task,
                DelegationRecord(
                    task_id=context.task_id,
                    from_role=transition.from_role_id,
                    to_role=transition.to_role_id,
                    transition_id=transition.id,
                    message=handoff_message or "",
                    success=True,
                ),
            )
        except Exception as exc:
            logger.error(f"Error executing transition {transition_id}: {exc}")
            await self._count_redelegation(context.task_id)
            return TransitionResult(
                success=False,
                transition_id=transition_id,
                message=f"Transition execution failed: {exc}",
            )
        logger.info(
            f"Task {context.task_id} moved from {transition.from_role_id} "
            f"to {transition.to_role_id}"
        )
        return TransitionResult(
            success=True,
            transition_id=transition_id,
            new_role_id=transition.to_role_id,
            message=(
                f"Successfully transitioned from {transition.from_role_id} "
                f"to {transition.to_role_id}"
            ),
        )

    async def get_transition_history(self, task_id: str) -> list[DelegationRecord]:
        try:
            return await self.repository.list_delegations(task_id)
        except Exception as exc:
            logger.warning(f"Failed to read delegation history for {task_id}: {exc}")
            return []

    # ------------------------------------------------------------------
    async def _count_redelegation(self, task_id: str) -> None:
        try:
            task = await self.repository.get_task(task_id)
            if task is None:
                return
            task.redelegation_count += 1
            await self.repository.save_task(task)
        except Exception as exc:
            logger.error(f"Failed to record redelegation for task {task_id}: {exc}")

    async def _time_in_role_ms(self, task_id: str) -> int:
        history = await self.get_transition_history(task_id)
        if history:
            since = history[0].delegated_at
        else:
            task = await self.repository.get_task(task_id)
            if task is None:
                return 0
            since = task.created_at
        return int((utc_now() - since).total_seconds() * 1000)

    def _resolve(self, path: str, context: ExecutionContext) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        root = Path(context.project_path) if context.project_path else Path.cwd()
        return root / candidate

    async def _deliverable_exists(
        self, deliverable: str, context: ExecutionContext, completed: set[str]
    ) -> bool:
        kind, _, value = deliverable.partition(":")
        if not value:
            kind, value = "file", deliverable
        if kind == "step":
            return value in completed
        if kind == "report":
            rows = await self.progress.history(context.task_id)
            done = {r.step_id for r in rows if r.status == StepStatus.COMPLETED}
            for step in await self.catalog.get_steps(done):
                if step.trigger_report and (not value or step.report_type == value):
                    return True
            return False
        if kind != "file":
            value = deliverable
        path = self._resolve(value, context)
        return await self.pool.run(path.exists)

    async def _quality_gate(self, gate: str, context: ExecutionContext) -> Optional[bool]:
        evidence = context.execution_data.get("qualityGates") or {}
        passed = _gate_passed(evidence.get(gate)) if isinstance(evidence, dict) else None
        if gate == "documentation" and passed is None:
            readme = self._resolve("README.md", context)

            def readme_ok() -> bool:
                if not readme.is_file():
                    return False
                return len(readme.read_text(encoding="utf-8").strip()) > MIN_README_LENGTH

            return await self.pool.run(readme_ok)
        if gate not in KNOWN_QUALITY_GATES and passed is None:
            return None
        return bool(passed)
