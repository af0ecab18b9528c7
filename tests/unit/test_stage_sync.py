from __future__ import annotations

from typing import Optional

import pytest

from conftest import FIXED_NOW, fixed_clock
from pilot.memory.schema import ActionResult, ActionStep, PilotSession, PilotStep, StepMode, StepStatus
from pilot.memory.store import PilotStore
from pilot.planning.progress import ProgressPlan, ProgressStage, ProgressSubtask, StageStatus, SubtaskStatus
from pilot.planning.sync import (
    StageSynchronizer,
    StageSyncError,
    SubtaskExecutionStatus,
    latest_results_by_step,
    merge_subtask_statuses,
    update_stage_progress,
)


def _session(store: PilotStore, *, current_epoch: int = 1) -> PilotSession:
    return store.create_session(
        PilotSession(session_id="ps-1", uid="user-1", title="Demo", current_epoch=current_epoch)
    )


def _step(
    store: PilotStore,
    name: str,
    status: StepStatus,
    *,
    epoch: int = 0,
    mode: StepMode = StepMode.SUBTASK,
    with_result: bool = True,
    errors: Optional[list] = None,
) -> PilotStep:
    step_id = f"pst-{name.strip().lower().replace(' ', '-')}-{mode.value}"
    result_id = f"ar-{step_id}"
    step = store.create_step(
        PilotStep(
            step_id=step_id,
            session_id="ps-1",
            name=name,
            epoch=epoch,
            mode=mode,
            status=status,
            entity_id=result_id,
        )
    )
    if with_result:
        store.save_result(
            ActionResult(
                result_id=result_id,
                uid="user-1",
                title=name,
                pilot_step_id=step_id,
                pilot_session_id="ps-1",
                status=status,
                storage_key=f"action-results/{result_id}",
                errors=errors or [],
            )
        )
    return step


def _plan(*names: str) -> ProgressPlan:
    return ProgressPlan(
        stages=[
            ProgressStage(
                id="stage-0",
                name="Gather",
                status=StageStatus.IN_PROGRESS,
                subtasks=[
                    ProgressSubtask(id=f"sub-{name}", name=name, query=f"look into {name}") for name in names
                ],
            ),
            ProgressStage(id="stage-1", name="Write", status=StageStatus.PENDING),
        ]
    )


def test_sync_reflects_partial_progress_of_the_epoch(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    _step(store, "B", StepStatus.EXECUTING)

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A", "B", "C"))

    stage = plan.stages[0]
    assert stage.stage_progress == 50
    assert stage.status == StageStatus.IN_PROGRESS
    by_name = {subtask.name: subtask for subtask in stage.subtasks}
    assert by_name["A"].status == SubtaskStatus.COMPLETED
    assert by_name["A"].completed_at is not None
    assert by_name["A"].output == "action-results/ar-pst-a-subtask"
    assert by_name["B"].status == SubtaskStatus.EXECUTING
    assert by_name["B"].completed_at is None
    assert by_name["C"].status == SubtaskStatus.PENDING
    assert by_name["C"].query == "look into C"
    assert [subtask.name for subtask in stage.subtasks] == ["A", "B", "C"]
    assert plan.current_stage_index == 1
    assert plan.overall_progress == 25
    assert stage.started_at == FIXED_NOW.isoformat()


def test_sync_appends_orphan_steps_after_planned_subtasks(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    _step(store, "Unplanned lookup", StepStatus.FINISH)

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A", "B"))

    stage = plan.stages[0]
    assert [subtask.name for subtask in stage.subtasks] == ["A", "B", "Unplanned lookup"]
    orphan = stage.subtasks[-1]
    assert orphan.id == "pst-unplanned-lookup-subtask"
    assert orphan.query == ""
    assert orphan.result_id == "ar-pst-unplanned-lookup-subtask"
    assert orphan.created_at == FIXED_NOW.isoformat()
    assert stage.stage_progress == 100
    assert stage.status == StageStatus.COMPLETED


def test_sync_matches_names_after_trimming_whitespace(store: PilotStore) -> None:
    _session(store)
    _step(store, "  A ", StepStatus.FINISH)

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A"))

    assert len(plan.stages[0].subtasks) == 1
    assert plan.stages[0].subtasks[0].status == SubtaskStatus.COMPLETED


def test_sync_skips_steps_without_results_when_merging(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    _step(store, "B", StepStatus.EXECUTING, with_result=False)

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A", "B"))

    stage = plan.stages[0]
    assert stage.subtasks[1].status == SubtaskStatus.PENDING
    assert stage.stage_progress == 50


def test_sync_records_error_messages_from_failed_results(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FAILED, errors=["rate limited"])

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A"))

    subtask = plan.stages[0].subtasks[0]
    assert subtask.status == SubtaskStatus.FAILED
    assert subtask.error_message == '["rate limited"]'
    assert plan.stages[0].stage_progress == 0
    assert plan.stages[0].status == StageStatus.PENDING


def test_resync_without_new_records_is_stable(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    _step(store, "Extra", StepStatus.EXECUTING)
    synchronizer = StageSynchronizer(store, clock=fixed_clock)

    first = synchronizer.sync_current_stage("ps-1", _plan("A", "B"))
    snapshot = first.stages[0].model_dump_json()
    second = synchronizer.sync_current_stage("ps-1", first)

    assert second.stages[0].model_dump_json() == snapshot


def test_completed_status_tracks_full_progress(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    _step(store, "B", StepStatus.FINISH)

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A", "B"))

    for stage in plan.stages:
        assert (stage.stage_progress == 100) == (stage.status == StageStatus.COMPLETED)
    assert plan.stages[0].completed_at == FIXED_NOW.isoformat()
    assert plan.stages[0].summary == 'Stage "Gather" completed 2 actions successfully.'


def test_sync_uses_summary_step_content_as_stage_summary(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    summary_step = _step(store, "Summarize", StepStatus.FINISH, mode=StepMode.SUMMARY)
    store.save_action_step(
        ActionStep(result_id=summary_step.entity_id, order=0, name="answer", content="Found A.")
    )

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A"))

    assert plan.stages[0].summary == "Found A."
    assert [subtask.name for subtask in plan.stages[0].subtasks] == ["A"]


def test_sync_without_steps_resets_progress_only(store: PilotStore) -> None:
    _session(store)
    plan = _plan("A")
    plan.stages[0].stage_progress = 60
    plan.stages[0].summary = "stale"

    synced = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", plan)

    assert synced.stages[0].stage_progress == 0
    assert synced.stages[0].status == StageStatus.IN_PROGRESS
    assert synced.stages[0].summary == ""


def test_sync_leaves_plan_alone_when_no_stage_matches_the_epoch(store: PilotStore) -> None:
    _session(store, current_epoch=5)
    plan = _plan("A")

    synced = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", plan)

    assert synced.current_stage_index == 0
    assert synced.stages[0].subtasks[0].status == SubtaskStatus.PENDING


def test_sync_raises_for_unknown_session(store: PilotStore) -> None:
    with pytest.raises(StageSyncError) as excinfo:
        StageSynchronizer(store).sync_current_stage("ps-missing", _plan("A"))
    assert "ps-missing" in str(excinfo.value)


def test_merge_uses_first_status_with_matching_name() -> None:
    stage = ProgressStage(name="Gather", subtasks=[ProgressSubtask(id="s1", name="A", query="q")])
    statuses = [
        SubtaskExecutionStatus(step_id="pst-1", name="A", status=SubtaskStatus.COMPLETED),
        SubtaskExecutionStatus(step_id="pst-2", name="A ", status=SubtaskStatus.FAILED),
    ]

    merge_subtask_statuses(stage, statuses, clock=fixed_clock)

    assert len(stage.subtasks) == 1
    assert stage.subtasks[0].status == SubtaskStatus.COMPLETED
    assert stage.subtasks[0].id == "s1"


def test_stage_with_no_finished_steps_drops_back_to_pending() -> None:
    stage = ProgressStage(name="Gather", status=StageStatus.COMPLETED, stage_progress=100)
    steps = [PilotStep(step_id="pst-1", session_id="ps-1", name="A", epoch=0, status=StepStatus.EXECUTING)]

    assert update_stage_progress(stage, steps, clock=fixed_clock) is True
    assert stage.stage_progress == 0
    assert stage.status == StageStatus.PENDING


def test_running_stage_with_no_finished_steps_drops_back_to_pending() -> None:
    stage = ProgressStage(name="Gather", status=StageStatus.IN_PROGRESS, stage_progress=40)
    steps = [PilotStep(step_id="pst-1", session_id="ps-1", name="A", epoch=0, status=StepStatus.FAILED)]

    assert update_stage_progress(stage, steps, clock=fixed_clock) is True
    assert stage.stage_progress == 0
    assert stage.status == StageStatus.PENDING


def test_latest_results_by_step_keeps_highest_version() -> None:
    results = [
        ActionResult(result_id="ar-1", version=0, pilot_step_id="pst-1", title="first"),
        ActionResult(result_id="ar-1", version=2, pilot_step_id="pst-1", title="third"),
        ActionResult(result_id="ar-1", version=1, pilot_step_id="pst-1", title="second"),
        ActionResult(result_id="ar-2", version=5, title="detached"),
    ]

    latest = latest_results_by_step(results)

    assert list(latest) == ["pst-1"]
    assert latest["pst-1"].title == "third"


def test_sync_projects_the_newest_result_version(store: PilotStore) -> None:
    _session(store)
    step = _step(store, "A", StepStatus.FAILED, errors=["timeout"])
    store.save_result(
        ActionResult(
            result_id=step.entity_id,
            version=1,
            pilot_step_id=step.step_id,
            status=StepStatus.FAILED,
            storage_key="action-results/retry",
            errors=["quota exceeded"],
        )
    )

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A"))

    subtask = plan.stages[0].subtasks[0]
    assert subtask.error_message == '["quota exceeded"]'
    assert subtask.output == "action-results/retry"


def test_fallback_summary_counts_every_finished_result_row(store: PilotStore) -> None:
    _session(store)
    step = _step(store, "A", StepStatus.FINISH)
    store.save_result(
        ActionResult(result_id=step.entity_id, version=1, pilot_step_id=step.step_id, status=StepStatus.FINISH)
    )
    _step(store, "B", StepStatus.FINISH)

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A", "B"))

    assert plan.stages[0].summary == 'Stage "Gather" completed 3 actions successfully.'


def test_summaries_from_several_summary_steps_are_joined(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    for name, text in (("Summarize A", "Found A."), ("Summarize B", "Nothing on B.")):
        summary_step = _step(store, name, StepStatus.FINISH, mode=StepMode.SUMMARY)
        store.save_action_step(ActionStep(result_id=summary_step.entity_id, order=0, name="answer", content=text))

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A"))

    assert plan.stages[0].summary == "Found A.\n\nNothing on B."


def test_summary_lookup_failure_leaves_stage_without_summary(store: PilotStore, monkeypatch) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    list_steps = store.list_steps

    def failing_list_steps(session_id, *, epoch=None, mode=None):
        if mode == StepMode.SUMMARY:
            raise RuntimeError("database is locked")
        return list_steps(session_id, epoch=epoch, mode=mode)

    monkeypatch.setattr(store, "list_steps", failing_list_steps)
    plan = _plan("A")
    plan.stages[0].summary = "stale"

    synced = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", plan)

    stage = synced.stages[0]
    assert stage.summary == ""
    assert stage.stage_progress == 100
    assert stage.status == StageStatus.COMPLETED


def test_summary_step_without_content_contributes_nothing(store: PilotStore) -> None:
    _session(store)
    _step(store, "A", StepStatus.FINISH)
    summary_step = _step(store, "Summarize", StepStatus.FINISH, mode=StepMode.SUMMARY)
    store.save_action_step(ActionStep(result_id=summary_step.entity_id, order=0, name="answer", content=""))

    plan = StageSynchronizer(store, clock=fixed_clock).sync_current_stage("ps-1", _plan("A"))

    assert plan.stages[0].summary == ""
