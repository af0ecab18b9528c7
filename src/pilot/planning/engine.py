"""Plan engine: retrieve or create a session's plan, reconcile it, re-plan, persist.

Every run of a session goes through :meth:`PlanEngine.run`. A session without
a readable plan gets a fresh one from the planning service. A session with a
plan has the stage of its last epoch synchronised against the stored
execution records and is then re-planned, with the planner's output merged
onto the synchronised plan. The result is written back exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..context import RunContext
from ..memory.store import PilotStore
from ..structured import CanvasContentItem, Toolset
from .intent import PlanningService, PlanWithSubtasks
from .progress import (
    Clock,
    ProgressPlan,
    dump_plan,
    iso_timestamp,
    load_plan,
    refresh_overall_progress,
    utc_now,
)
from .sync import StageSynchronizer, StageSyncError

LOGGER = logging.getLogger(__name__)


class PlanEngineError(RuntimeError):
    """Raised when a plan cannot be retrieved, created, or persisted."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(f"{message} (session {session_id})")
        self.session_id = session_id


@dataclass(slots=True, frozen=True)
class ReplanOutcome:
    """Result of re-planning: either the merged plan or the unchanged input."""

    plan: ProgressPlan
    reason: Optional[str] = None

    @classmethod
    def ok(cls, plan: ProgressPlan) -> "ReplanOutcome":
        return cls(plan=plan)

    @classmethod
    def degraded(cls, plan: ProgressPlan, reason: str) -> "ReplanOutcome":
        return cls(plan=plan, reason=reason)

    @property
    def is_degraded(self) -> bool:
        return self.reason is not None


def plan_from_candidate(candidate: PlanWithSubtasks) -> ProgressPlan:
    """Wrap a freshly planned candidate; its subtasks belong to the first stage."""
    plan = ProgressPlan(
        stages=[stage.model_copy(deep=True) for stage in candidate.stages],
        current_stage_index=candidate.current_stage_index,
        overall_progress=candidate.overall_progress or 0,
        last_updated=candidate.last_updated,
        planning_logic=candidate.planning_logic,
        user_intent=candidate.user_intent,
        estimated_total_epochs=candidate.estimated_total_epochs,
    )
    if plan.stages and candidate.current_stage_subtasks:
        plan.stages[0].subtasks = [subtask.model_copy(deep=True) for subtask in candidate.current_stage_subtasks]
    return refresh_overall_progress(plan)


def merge_replanned_plan(current: ProgressPlan, candidate: PlanWithSubtasks) -> ProgressPlan:
    """Merge a re-planning candidate onto the synchronised plan.

    Stages are replaced only when the candidate has any. The stage index always
    comes from ``current``. Optional fields fall back to ``current`` one by one.
    """
    source_stages = candidate.stages if candidate.stages else current.stages
    merged = ProgressPlan(
        stages=[stage.model_copy(deep=True) for stage in source_stages],
        current_stage_index=current.current_stage_index,
        overall_progress=(
            candidate.overall_progress if candidate.overall_progress is not None else current.overall_progress
        ),
        last_updated=candidate.last_updated or current.last_updated,
        planning_logic=candidate.planning_logic or current.planning_logic,
        user_intent=candidate.user_intent or current.user_intent,
        estimated_total_epochs=(
            candidate.estimated_total_epochs
            if candidate.estimated_total_epochs is not None
            else current.estimated_total_epochs
        ),
    )

    stage = merged.current_stage
    if stage is not None and candidate.current_stage_subtasks:
        stage.subtasks = [subtask.model_copy(deep=True) for subtask in candidate.current_stage_subtasks]

    return refresh_overall_progress(merged)


class PlanEngine:
    """Top-level entry point for producing a session's plan on each run."""

    def __init__(
        self,
        store: PilotStore,
        planner: PlanningService,
        *,
        synchronizer: Optional[StageSynchronizer] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._planner = planner
        self._clock = clock
        self._synchronizer = synchronizer or StageSynchronizer(store, clock=clock)

    def run(
        self,
        ctx: RunContext,
        session_id: str,
        question: str,
        available_tools: Sequence[Toolset] = (),
        canvas_items: Sequence[CanvasContentItem] = (),
    ) -> ProgressPlan:
        LOGGER.info("Starting plan run for session %s", session_id)
        plan, created = self.get_or_create_plan(ctx, session_id, question, available_tools, canvas_items)

        if not created:
            plan = self._synchronizer.sync_current_stage(session_id, plan)
            LOGGER.info("Re-planning existing plan for session %s", session_id)
            outcome = self.perform_dynamic_replanning(ctx, question, plan, available_tools, canvas_items)
            if outcome.is_degraded:
                LOGGER.warning("Keeping synchronised plan for session %s: %s", session_id, outcome.reason)
            plan = outcome.plan

        self.persist_plan(session_id, plan)
        LOGGER.info(
            "Plan run completed for session %s (stage %d/%d, %d%%)",
            session_id,
            plan.current_stage_index,
            len(plan.stages),
            plan.overall_progress,
        )
        return plan

    def get_or_create_plan(
        self,
        ctx: RunContext,
        session_id: str,
        question: str,
        available_tools: Sequence[Toolset] = (),
        canvas_items: Sequence[CanvasContentItem] = (),
    ) -> tuple[ProgressPlan, bool]:
        """Return the stored plan, or a new one when none is readable.

        The boolean is ``True`` when the plan was created by this call.
        """
        try:
            session = self._store.get_session(session_id)
            if session is None:
                raise PlanEngineError(session_id, "Pilot session not found")

            existing = load_plan(session.progress)
            if existing is not None:
                LOGGER.debug("Retrieved existing plan for session %s", session_id)
                return existing, False
            if session.progress:
                LOGGER.warning("Stored plan for session %s is unreadable; creating a new one", session_id)

            return self.create_new_plan(ctx, question, available_tools, canvas_items), True
        except PlanEngineError:
            raise
        except Exception as error:
            LOGGER.error("Error getting or creating plan for session %s: %s", session_id, error)
            raise PlanEngineError(session_id, f"Failed to get or create progress plan: {error}") from error

    def create_new_plan(
        self,
        ctx: RunContext,
        question: str,
        available_tools: Sequence[Toolset] = (),
        canvas_items: Sequence[CanvasContentItem] = (),
    ) -> ProgressPlan:
        candidate = self._planner.analyze_intent_and_plan(
            question,
            None,
            available_tools,
            canvas_items,
            ctx.locale,
        )
        if candidate is None:
            raise ValueError("planning service returned no plan")
        return plan_from_candidate(candidate)

    def perform_dynamic_replanning(
        self,
        ctx: RunContext,
        question: str,
        current_plan: ProgressPlan,
        available_tools: Sequence[Toolset] = (),
        canvas_items: Sequence[CanvasContentItem] = (),
    ) -> ReplanOutcome:
        try:
            candidate = self._planner.analyze_intent_and_plan(
                question,
                current_plan.model_copy(deep=True),
                available_tools,
                canvas_items,
                ctx.locale,
            )
            if candidate is None:
                return ReplanOutcome.degraded(current_plan, "planning service returned no plan")
            merged = merge_replanned_plan(current_plan, candidate)
        except Exception as error:
            LOGGER.error("Error performing dynamic re-planning: %s", error)
            return ReplanOutcome.degraded(current_plan, f"re-planning failed: {error}")

        LOGGER.info(
            "Re-planning produced %d stage(s) with %d current stage subtask(s)",
            len(merged.stages),
            len(candidate.current_stage_subtasks),
        )
        return ReplanOutcome.ok(merged)

    def persist_plan(self, session_id: str, plan: ProgressPlan) -> None:
        """Stamp ``last_updated``, recompute progress, and write the plan once."""
        plan.last_updated = iso_timestamp(self._clock)
        refresh_overall_progress(plan)
        try:
            self._store.update_session_progress(session_id, dump_plan(plan))
        except Exception as error:
            raise PlanEngineError(session_id, f"Failed to persist progress plan: {error}") from error

    def get_current_plan(self, session_id: str) -> Optional[ProgressPlan]:
        session = self._store.get_session(session_id)
        if session is None:
            return None
        return load_plan(session.progress)


__all__ = [
    "PlanEngine",
    "PlanEngineError",
    "ReplanOutcome",
    "StageSyncError",
    "merge_replanned_plan",
    "plan_from_candidate",
]
