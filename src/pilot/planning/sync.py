"""Reconcile a plan stage against the execution records of its epoch."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..memory.schema import ActionResult, ActionStep, PilotStep, StepMode, StepStatus
from ..memory.store import PilotStore
from .progress import (
    Clock,
    ProgressPlan,
    ProgressStage,
    ProgressSubtask,
    StageStatus,
    SubtaskStatus,
    iso_timestamp,
    map_step_status,
    refresh_overall_progress,
    round_half_up,
    utc_now,
)

LOGGER = logging.getLogger(__name__)


class StageSyncError(RuntimeError):
    """Raised when a stage cannot be reconciled against its execution records."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(f"Failed to sync stage status for session {session_id}: {message}")
        self.session_id = session_id


@dataclass(slots=True)
class SubtaskExecutionStatus:
    """Projection of one execution step and its result onto subtask fields."""

    step_id: str
    name: str
    status: SubtaskStatus
    result_id: Optional[str] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: Optional[str] = None


def latest_results_by_step(results: Sequence[ActionResult]) -> Dict[str, ActionResult]:
    """Keep the highest-version result for each pilot step id."""
    latest: Dict[str, ActionResult] = {}
    for result in results:
        if not result.pilot_step_id:
            continue
        current = latest.get(result.pilot_step_id)
        if current is None or result.version > current.version:
            latest[result.pilot_step_id] = result
    return latest


def _format_errors(errors: object) -> Optional[str]:
    if not errors:
        return None
    if isinstance(errors, str):
        return errors
    return json.dumps(errors)


def project_execution_statuses(
    steps: Sequence[PilotStep],
    results: Sequence[ActionResult],
) -> List[SubtaskExecutionStatus]:
    """Build status records for every step that already produced a result."""
    by_step = latest_results_by_step(results)
    statuses: List[SubtaskExecutionStatus] = []
    for step in steps:
        result = by_step.get(step.step_id)
        if result is None:
            continue
        completed_at = None
        if step.status == StepStatus.FINISH and step.updated_at:
            completed_at = step.updated_at.isoformat()
        statuses.append(
            SubtaskExecutionStatus(
                step_id=step.step_id,
                name=step.name,
                status=map_step_status(step.status),
                result_id=step.entity_id,
                output=result.output_url or result.storage_key or None,
                error_message=_format_errors(result.errors),
                completed_at=completed_at,
            )
        )
    return statuses


def merge_subtask_statuses(
    stage: ProgressStage,
    statuses: Sequence[SubtaskExecutionStatus],
    *,
    clock: Clock = utc_now,
) -> ProgressStage:
    """Fold execution statuses into ``stage.subtasks`` by trimmed name.

    Planned subtasks keep their id, query, creation time and result id. Status
    records without a planned counterpart become new subtasks appended last.
    """
    updated: List[ProgressSubtask] = []
    for subtask in stage.subtasks:
        key = subtask.name.strip()
        match = next((status for status in statuses if status.name.strip() == key), None)
        if match is None:
            updated.append(subtask)
            continue
        updated.append(
            subtask.model_copy(
                update={
                    "status": match.status,
                    "output": match.output,
                    "error_message": match.error_message,
                    "completed_at": match.completed_at,
                }
            )
        )

    planned_names = {subtask.name.strip() for subtask in updated}
    orphans = [
        ProgressSubtask(
            id=status.step_id,
            name=status.name,
            query="",
            status=status.status,
            output=status.output,
            result_id=status.result_id,
            error_message=status.error_message,
            created_at=iso_timestamp(clock),
            completed_at=status.completed_at,
        )
        for status in statuses
        if status.name.strip() not in planned_names
    ]

    stage.subtasks = [*updated, *orphans]
    LOGGER.debug("Stage %r now tracks %d subtask(s)", stage.name, len(stage.subtasks))
    return stage


def update_stage_progress(
    stage: ProgressStage,
    steps: Sequence[PilotStep],
    *,
    clock: Clock = utc_now,
) -> bool:
    """Recompute stage progress from step statuses.

    Returns ``False`` when the epoch has no steps, in which case only the
    progress is reset and the status is left untouched.
    """
    if not steps:
        stage.stage_progress = 0
        return False

    finished = sum(1 for step in steps if step.status == StepStatus.FINISH)
    stage.stage_progress = round_half_up(100 * finished / len(steps))

    if stage.stage_progress == 100:
        stage.status = StageStatus.COMPLETED
        stage.completed_at = iso_timestamp(clock)
    elif stage.stage_progress > 0:
        stage.status = StageStatus.IN_PROGRESS
        if not stage.started_at:
            stage.started_at = iso_timestamp(clock)
    elif stage.status in (StageStatus.COMPLETED, StageStatus.IN_PROGRESS):
        stage.status = StageStatus.PENDING
        stage.completed_at = None
    return True


class StageSynchronizer:
    """Update the stage of the epoch that just ran so it mirrors stored records."""

    def __init__(self, store: PilotStore, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    def sync_current_stage(self, session_id: str, plan: ProgressPlan) -> ProgressPlan:
        try:
            return self._sync(session_id, plan)
        except StageSyncError:
            raise
        except Exception as error:
            LOGGER.error("Error syncing current stage status for session %s: %s", session_id, error)
            raise StageSyncError(session_id, str(error)) from error

    def _sync(self, session_id: str, plan: ProgressPlan) -> ProgressPlan:
        if plan is None:
            raise StageSyncError(session_id, "progress plan is missing")

        session = self._store.get_session(session_id)
        if session is None:
            raise StageSyncError(session_id, "session not found")

        epoch = session.current_epoch - 1
        stage = plan.stage_at(epoch)
        if stage is None:
            LOGGER.warning("No stage found for epoch %d in session %s", epoch, session_id)
            return plan

        steps = self._store.list_steps(session_id, epoch=epoch, mode=StepMode.SUBTASK)
        results = self._store.list_results_for_steps(step.step_id for step in steps)

        stage.summary = ""
        statuses = project_execution_statuses(steps, results)
        LOGGER.info("Retrieved %d subtask status(es) for stage %r", len(statuses), stage.name)
        merge_subtask_statuses(stage, statuses, clock=self._clock)

        if update_stage_progress(stage, steps, clock=self._clock):
            summary = self.extract_stage_summary(session_id, epoch, stage, results)
            if summary:
                stage.summary = summary

        plan.current_stage_index = session.current_epoch
        refresh_overall_progress(plan)
        return plan

    def extract_stage_summary(
        self,
        session_id: str,
        epoch: int,
        stage: ProgressStage,
        results: Sequence[ActionResult],
    ) -> Optional[str]:
        """Derive the stage summary from the epoch's summary step, if any."""
        try:
            if not results:
                return None

            summary_steps = self._store.list_steps(session_id, epoch=epoch, mode=StepMode.SUMMARY)
            if not summary_steps:
                finished = [result for result in results if result.status == StepStatus.FINISH]
                if finished:
                    return f'Stage "{stage.name}" completed {len(finished)} actions successfully.'
                return None

            entity_ids = [step.entity_id for step in summary_steps if step.entity_id]
            summary_results = self._store.list_results(entity_ids, version=0)
            if not summary_results:
                return None

            contents = self._store.list_action_steps(
                [result.result_id for result in summary_results],
                version=0,
            )
            by_result: Dict[str, List[ActionStep]] = {}
            for item in contents:
                by_result.setdefault(item.result_id, []).append(item)

            summaries: List[str] = []
            for result in summary_results:
                text = _summary_text(by_result.get(result.result_id) or [])
                if text:
                    summaries.append(text)

            return "\n\n".join(summaries) if summaries else None
        except Exception as error:
            LOGGER.error("Error extracting stage summary for session %s: %s", session_id, error)
            return None


def _summary_text(contents: Sequence[ActionStep]) -> Optional[str]:
    if contents and contents[0].content:
        return contents[0].content
    return None


__all__ = [
    "StageSyncError",
    "StageSynchronizer",
    "SubtaskExecutionStatus",
    "latest_results_by_step",
    "merge_subtask_statuses",
    "project_execution_statuses",
    "update_stage_progress",
]
