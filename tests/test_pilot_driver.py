from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import pytest

from conftest import ScriptedPlanner
from pilot.config import PilotSettings
from pilot.context import RunContext
from pilot.driver import (
    InMemoryCanvas,
    PilotService,
    SessionNotFoundError,
    SessionRequest,
    build_context_and_history,
)
from pilot.memory.schema import SessionStatus, StepMode, StepStatus
from pilot.memory.store import PilotStore
from pilot.models.offline import OfflineLLMClient
from pilot.planning.engine import PlanEngine
from pilot.planning.intent import IntentAnalysisService
from pilot.planning.progress import StageStatus, SubtaskStatus
from pilot.queue import JobQueue
from pilot.skills.dispatch import LocalSkillDispatcher, render_local_answer
from pilot.structured import CanvasContentItem


@dataclass(slots=True)
class Harness:
    store: PilotStore
    service: PilotService
    queue: JobQueue
    dispatcher: LocalSkillDispatcher
    canvas: InMemoryCanvas

    def pump(self, ctx: RunContext, *, rounds: int = 40) -> None:
        """Run queued jobs and answer every dispatched skill until nothing is left."""
        for _ in range(rounds):
            report = self.queue.drain(self.service.handle_job)
            assert report.failed == []
            invocations = self.dispatcher.take_pending()
            if not invocations and not len(self.queue):
                return
            for invocation in invocations:
                self.service.complete_step(ctx, invocation.result_id, content=render_local_answer(invocation))
        raise AssertionError("session did not settle")

    def complete_pending(self, ctx: RunContext) -> list[str]:
        invocations = self.dispatcher.take_pending()
        for invocation in invocations:
            self.service.complete_step(ctx, invocation.result_id, content=render_local_answer(invocation))
        return [invocation.result_id for invocation in invocations]


def _harness(
    store: PilotStore,
    *,
    planner=None,
    settings: Optional[PilotSettings] = None,
    variable_extractor=None,
) -> Harness:
    queue = JobQueue()
    dispatcher = LocalSkillDispatcher()
    canvas = InMemoryCanvas()
    engine = PlanEngine(store, planner or IntentAnalysisService(OfflineLLMClient()))
    service = PilotService(
        store,
        engine,
        dispatcher,
        queue,
        canvas=canvas,
        settings=settings,
        variable_extractor=variable_extractor,
    )
    return Harness(store=store, service=service, queue=queue, dispatcher=dispatcher, canvas=canvas)


def test_session_runs_every_epoch_until_finished(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(
        ctx,
        SessionRequest(input={"query": "compare databases"}, target_id="canvas-1", target_type="canvas"),
    )
    assert session.status == SessionStatus.EXECUTING
    assert [job.name for job in harness.queue.pending] == [f"run-pilot-{session.session_id}"]

    harness.pump(ctx)

    detail = harness.service.get_session_detail(ctx, session.session_id)
    assert detail.session.status == SessionStatus.FINISH
    assert detail.session.current_epoch == 3
    modes = [item.step.mode for item in detail.steps]
    assert modes.count(StepMode.SUBTASK) == 6
    assert modes.count(StepMode.SUMMARY) == 3
    assert all(item.step.status == StepStatus.FINISH for item in detail.steps)
    assert all(item.result is not None and item.result.status == StepStatus.FINISH for item in detail.steps)

    plan = detail.plan
    assert plan is not None
    assert plan.overall_progress == 100
    assert plan.current_stage_index == 3
    assert all(stage.status == StageStatus.COMPLETED for stage in plan.stages)

    canvas_items = harness.canvas.get_canvas_content_items(ctx, "canvas-1")
    assert len(canvas_items) == 9
    assert all(item.content for item in canvas_items)


def _assert_stage_statuses_match_progress(plan) -> None:
    for stage in plan.stages:
        assert (stage.status == StageStatus.COMPLETED) == (stage.stage_progress == 100), stage.name
        if stage.status == StageStatus.IN_PROGRESS:
            assert 0 < stage.stage_progress < 100, stage.name


def test_finished_stages_keep_their_synchronised_history(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))

    for _ in range(40):
        report = harness.queue.drain(harness.service.handle_job)
        assert report.failed == []
        plan = harness.service.get_session_detail(ctx, session.session_id).plan
        if plan is not None:
            _assert_stage_statuses_match_progress(plan)
        if not harness.complete_pending(ctx) and not len(harness.queue):
            break

    plan = harness.service.get_session_detail(ctx, session.session_id).plan
    assert plan is not None
    assert [stage.name for stage in plan.stages] == ["Information Gathering", "Analysis", "Synthesis"]
    for stage in plan.stages:
        assert stage.status == StageStatus.COMPLETED
        assert stage.stage_progress == 100
        assert stage.summary
        assert stage.completed_at is not None
        assert [subtask.name for subtask in stage.subtasks] == [
            f"{stage.name}: overview",
            f"{stage.name}: details",
        ]
        assert all(subtask.status == SubtaskStatus.COMPLETED for subtask in stage.subtasks)


def test_summary_and_next_epoch_receive_prior_results_as_history(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(
        ctx,
        SessionRequest(input={"query": "compare databases"}, target_id="canvas-1", target_type="canvas"),
    )

    harness.queue.drain(harness.service.handle_job)
    first_epoch = harness.dispatcher.sent[:]
    assert [invocation.query for invocation in first_epoch] == [
        "Give an overview of compare databases",
        "List the key details about compare databases",
    ]
    assert harness.store.get_session(session.session_id).status == SessionStatus.WAITING

    harness.complete_pending(ctx)
    harness.queue.drain(harness.service.handle_job)
    summary = harness.dispatcher.sent[-1]
    assert summary.query == "Summarize epoch 1/4 progress on: compare databases"
    assert len(summary.history) == 2

    harness.complete_pending(ctx)
    harness.queue.drain(harness.service.handle_job)
    second_epoch = harness.dispatcher.sent[3:]
    assert [invocation.input["query"] for invocation in second_epoch] == [
        "Give an overview of compare databases",
        "List the key details about compare databases",
    ]
    assert all(len(invocation.history) == 1 for invocation in second_epoch)
    assert harness.store.get_session(session.session_id).current_epoch == 1
    steps = harness.store.list_steps(session.session_id, epoch=1)
    assert [step.name for step in steps] == ["Analysis: overview", "Analysis: details"]


def test_repeated_runs_and_syncs_do_not_duplicate_work(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))
    harness.queue.drain(harness.service.handle_job)

    assert harness.service.run_pilot(ctx, session.session_id) == []

    harness.complete_pending(ctx)
    harness.queue.drain(harness.service.handle_job)
    assert harness.service.run_pilot(ctx, session.session_id, StepMode.SUMMARY) == []

    harness.complete_pending(ctx)
    harness.queue.drain(harness.service.handle_job)
    summary_step = harness.store.list_steps(session.session_id, epoch=0, mode=StepMode.SUMMARY)[0]

    harness.service.sync_step(ctx, summary_step.step_id)
    harness.service.sync_step(ctx, summary_step.step_id)

    assert harness.store.get_session(session.session_id).current_epoch == 1
    assert len(harness.queue) == 0
    assert len(harness.store.list_steps(session.session_id, epoch=1, mode=StepMode.SUBTASK)) == 2


def test_session_stops_at_max_epoch(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}, max_epoch=0))

    harness.pump(ctx)

    final = harness.store.get_session(session.session_id)
    assert final.status == SessionStatus.FINISH
    assert final.current_epoch == 0
    assert harness.store.list_steps(session.session_id, mode=StepMode.SUMMARY) == []
    assert len(harness.store.list_steps(session.session_id, mode=StepMode.SUBTASK)) == 2


def test_steps_per_epoch_are_capped(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store, settings=PilotSettings(max_steps_per_epoch=1))
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))

    harness.queue.drain(harness.service.handle_job)

    assert len(harness.store.list_steps(session.session_id)) == 1


def test_unknown_skill_finishes_the_session_without_steps(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store, settings=PilotSettings(default_skill="missingSkill"))
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))

    harness.queue.drain(harness.service.handle_job)

    assert harness.store.get_session(session.session_id).status == SessionStatus.FINISH
    assert harness.dispatcher.sent == []


def test_planning_failure_marks_the_session_failed(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store, planner=ScriptedPlanner())
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))

    with pytest.raises(Exception, match="Failed to get or create progress plan"):
        harness.service.run_pilot(ctx, session.session_id)

    assert harness.store.get_session(session.session_id).status == SessionStatus.FAILED


def test_failed_jobs_are_reported_by_the_queue(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store, planner=ScriptedPlanner())
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))

    report = harness.queue.drain(harness.service.handle_job)

    assert report.failed == [f"run-pilot-{session.session_id}"]
    assert harness.store.get_session(session.session_id).status == SessionStatus.FAILED


def test_variable_extraction_errors_are_ignored(store: PilotStore, ctx: RunContext) -> None:
    calls: list[str] = []

    class Extractor:
        def extract(self, ctx: RunContext, session_id: str, query: str) -> None:
            calls.append(query)
            raise RuntimeError("extractor down")

    harness = _harness(store, variable_extractor=Extractor())
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))

    report = harness.queue.drain(harness.service.handle_job)

    assert report.failed == []
    assert len(calls) == 2
    assert harness.store.get_session(session.session_id).status == SessionStatus.WAITING


def test_sessions_are_scoped_to_their_owner(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))
    stranger = RunContext(uid="someone-else")

    with pytest.raises(SessionNotFoundError):
        harness.service.get_session_detail(stranger, session.session_id)
    with pytest.raises(SessionNotFoundError):
        harness.service.run_pilot(stranger, session.session_id)
    assert harness.store.get_session(session.session_id).status == SessionStatus.EXECUTING
    assert harness.service.list_sessions(stranger) == []
    assert [item.session_id for item in harness.service.list_sessions(ctx)] == [session.session_id]


def test_update_session_only_applies_provided_values(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(
        ctx, SessionRequest(input={"query": "compare databases"}, title="Databases", max_epoch=2)
    )

    updated = harness.service.update_session(ctx, session.session_id, max_epoch=0, input={})
    assert updated.max_epoch == 2
    assert updated.title == "Databases"

    updated = harness.service.update_session(ctx, session.session_id, max_epoch=4, input={"query": "compare queues"})
    assert updated.max_epoch == 4
    assert updated.query == "compare queues"


def test_todo_markdown_lists_dispatched_steps(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))
    harness.queue.drain(harness.service.handle_job)
    harness.service.complete_step(ctx, harness.dispatcher.sent[0].result_id, content="done")

    markdown = harness.service.todo_markdown(ctx, session.session_id)

    assert "## Current Epoch: 1/4" in markdown
    assert ": Information Gathering: overview" in markdown
    assert "- [ ] Information Gathering: details: List the key details about compare databases (Priority: 1)" in markdown


def test_complete_step_records_content_and_errors(store: PilotStore, ctx: RunContext) -> None:
    harness = _harness(store)
    session = harness.service.create_session(ctx, SessionRequest(input={"query": "compare databases"}))
    harness.queue.drain(harness.service.handle_job)
    invocation = harness.dispatcher.sent[0]

    step = harness.service.complete_step(
        ctx,
        invocation.result_id,
        status=StepStatus.FAILED,
        content="partial answer",
        errors=["timeout"],
        storage_key="action-results/x",
    )

    assert step is not None
    assert step.status == StepStatus.FAILED
    result = harness.store.get_result(invocation.result_id)
    assert result.errors == ["timeout"]
    assert result.storage_key == "action-results/x"
    assert [item.content for item in harness.store.list_action_steps([invocation.result_id])] == ["partial answer"]
    assert [job.name for job in harness.queue.pending] == [f"sync-step-{step.step_id}"]

    harness.queue.drain(harness.service.handle_job)
    assert harness.store.get_session(session.session_id).status == SessionStatus.WAITING

    with pytest.raises(LookupError):
        harness.service.complete_step(ctx, "ar-missing")


def test_build_context_groups_matched_items_by_type() -> None:
    items = [
        CanvasContentItem(id="res-abc", type="resource", title="Paper", content="body"),
        CanvasContentItem(id="doc-abc", type="document", title="Notes", content_preview="preview"),
        CanvasContentItem(id="code-abc", type="codeArtifact", title="Script", content="print(1)"),
        CanvasContentItem(id="ar-abc", type="skillResponse", title="Earlier answer"),
        CanvasContentItem(id="img-abc", type="image", title="Chart", content="alt text"),
        CanvasContentItem(id="zzz-unrelated", type="document", title="Other", content="x"),
    ]

    bundle = build_context_and_history(items, ["res-abd", "doc-abc", "code-abc", "ar-abc", "img-abc", None])

    assert [entry["resource_id"] for entry in bundle.context["resources"]] == ["res-abc"]
    assert bundle.context["documents"][0]["content"] == "preview"
    assert bundle.context["code_artifacts"][0]["artifact_id"] == "code-abc"
    assert bundle.history == [{"result_id": "ar-abc", "title": "Earlier answer"}]
    assert bundle.context["content_list"][0]["metadata"]["type"] == "image"
    assert build_context_and_history([], ["res-abc"]).history == []
