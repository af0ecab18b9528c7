"""Epoch driver: turn the current plan into dispatched steps and advance epochs.

Each session alternates between two kinds of runs. A subtask run asks the plan
engine for the up-to-date plan and dispatches the current stage's open
subtasks. Once every subtask step of the epoch has finished, a summary run
dispatches one summary step. When that finishes too, the session moves on to
the next epoch or finishes. Completion reports arrive through
:meth:`PilotService.complete_step` and are folded in by :meth:`PilotService.sync_step`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .config import PilotSettings
from .context import RunContext
from .memory.schema import (
    ActionResult,
    ActionStep,
    PilotSession,
    PilotStep,
    SessionStatus,
    StepMode,
    StepStatus,
)
from .memory.store import PilotStore
from .planning.engine import PlanEngine
from .planning.progress import TERMINAL_SUBTASK_STATUSES, ProgressPlan, ProgressSubtask, load_plan
from .planning.sync import latest_results_by_step
from .prompts import build_subtask_skill_input, build_summary_skill_input, format_todo_md
from .queue import Job, JobKind, JobQueue
from .skills.dispatch import (
    SkillDispatcher,
    SkillInvocation,
    VariableExtractor,
    skills_as_toolsets,
)
from .structured import CanvasContentItem, Toolset
from .utils.ids import gen_result_id, gen_session_id, gen_step_id
from .utils.similarity import DEFAULT_MATCH_THRESHOLD, find_best_match

LOGGER = logging.getLogger(__name__)

MAX_STEPS_PER_EPOCH = 3
MAX_EPOCH = 3


class SessionNotFoundError(LookupError):
    """Raised when a session does not exist or belongs to another user."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Pilot session {session_id} not found")
        self.session_id = session_id


class CanvasProvider(Protocol):
    def get_canvas_content_items(self, ctx: RunContext, target_id: Optional[str]) -> Sequence[CanvasContentItem]:
        ...

    def upsert_item(self, ctx: RunContext, target_id: Optional[str], item: CanvasContentItem) -> None:
        ...


class InMemoryCanvas:
    """Canvas provider that keeps items per target in memory."""

    def __init__(self, items: Optional[Dict[str, List[CanvasContentItem]]] = None) -> None:
        self._items: Dict[str, List[CanvasContentItem]] = {key: list(value) for key, value in (items or {}).items()}

    def get_canvas_content_items(self, ctx: RunContext, target_id: Optional[str]) -> Sequence[CanvasContentItem]:
        if not target_id:
            return []
        return list(self._items.get(target_id, []))

    def upsert_item(self, ctx: RunContext, target_id: Optional[str], item: CanvasContentItem) -> None:
        if not target_id:
            return
        items = self._items.setdefault(target_id, [])
        for index, existing in enumerate(items):
            if existing.id == item.id:
                items[index] = item
                return
        items.append(item)


@dataclass(slots=True)
class SessionRequest:
    """Parameters for creating a pilot session."""

    input: Dict[str, Any]
    title: Optional[str] = None
    max_epoch: Optional[int] = None
    target_id: Optional[str] = None
    target_type: Optional[str] = None


@dataclass(slots=True)
class StepDetail:
    step: PilotStep
    result: Optional[ActionResult] = None


@dataclass(slots=True)
class SessionDetail:
    session: PilotSession
    steps: List[StepDetail] = field(default_factory=list)

    @property
    def plan(self) -> Optional[ProgressPlan]:
        return load_plan(self.session.progress)


@dataclass(slots=True)
class ContextBundle:
    """Skill context and result history assembled from canvas items."""

    context: Dict[str, Any] = field(
        default_factory=lambda: {"resources": [], "documents": [], "code_artifacts": []}
    )
    history: List[Dict[str, Any]] = field(default_factory=list)


def build_context_and_history(
    canvas_items: Sequence[CanvasContentItem],
    context_item_ids: Sequence[Optional[str]],
    *,
    threshold: int = DEFAULT_MATCH_THRESHOLD,
) -> ContextBundle:
    """Resolve loosely named context ids against canvas items and group them by type."""
    bundle = ContextBundle()
    ids = [item_id for item_id in context_item_ids if item_id]
    if not canvas_items or not ids:
        return bundle

    by_id = {item.id: item for item in canvas_items}
    candidates = [item.id for item in canvas_items]
    matched: List[CanvasContentItem] = []
    for item_id in ids:
        best = find_best_match(item_id, candidates, threshold=threshold)
        if best is not None:
            matched.append(by_id[best])

    for item in matched:
        content = item.content or item.content_preview
        if item.type == "resource":
            bundle.context["resources"].append(
                {
                    "resource_id": item.id,
                    "title": item.title,
                    "resource_type": "text",
                    "content": content,
                    "content_preview": item.content_preview,
                    "is_current": True,
                }
            )
        elif item.type == "document":
            bundle.context["documents"].append(
                {
                    "doc_id": item.id,
                    "title": item.title,
                    "content": content,
                    "content_preview": item.content_preview,
                    "is_current": True,
                }
            )
        elif item.type == "codeArtifact":
            bundle.context["code_artifacts"].append(
                {
                    "artifact_id": item.id,
                    "title": item.title,
                    "content": item.content,
                    "type": "text/markdown",
                    "is_current": True,
                }
            )
        elif item.type == "skillResponse":
            bundle.history.append({"result_id": item.id, "title": item.title})
        elif content:
            bundle.context.setdefault("content_list", []).append(
                {
                    "content": content,
                    "metadata": {"title": item.title, "id": item.id, "type": item.type},
                }
            )
    return bundle


class PilotService:
    """Drive sessions epoch by epoch on top of the plan engine."""

    def __init__(
        self,
        store: PilotStore,
        engine: PlanEngine,
        dispatcher: SkillDispatcher,
        queue: JobQueue,
        *,
        canvas: Optional[CanvasProvider] = None,
        settings: Optional[PilotSettings] = None,
        toolsets: Optional[Sequence[Toolset]] = None,
        variable_extractor: Optional[VariableExtractor] = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._dispatcher = dispatcher
        self._queue = queue
        self._canvas = canvas or InMemoryCanvas()
        self._settings = settings or PilotSettings(max_epoch=MAX_EPOCH, max_steps_per_epoch=MAX_STEPS_PER_EPOCH)
        self._toolsets = list(toolsets) if toolsets is not None else None
        self._variable_extractor = variable_extractor

    # Session management --------------------------------------------------------------
    def create_session(self, ctx: RunContext, request: SessionRequest) -> PilotSession:
        query = str(request.input.get("query") or "")
        session = PilotSession(
            session_id=gen_session_id(),
            uid=ctx.uid,
            title=request.title or query or "New Pilot Session",
            input=dict(request.input),
            target_id=request.target_id,
            target_type=request.target_type,
            max_epoch=request.max_epoch if request.max_epoch is not None else self._settings.max_epoch,
            status=SessionStatus.EXECUTING,
        )
        session = self._store.create_session(session)
        self._enqueue_run(ctx, session.session_id, StepMode.SUBTASK, name=f"run-pilot-{session.session_id}")
        return session

    def update_session(
        self,
        ctx: RunContext,
        session_id: str,
        *,
        max_epoch: Optional[int] = None,
        input: Optional[Dict[str, Any]] = None,
    ) -> PilotSession:
        self._require_session(ctx, session_id)
        self._store.update_session(
            session_id,
            max_epoch=max_epoch or None,
            input=input or None,
        )
        return self._require_session(ctx, session_id)

    def list_sessions(
        self,
        ctx: RunContext,
        *,
        target_id: Optional[str] = None,
        target_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> List[PilotSession]:
        page = max(page, 1)
        return self._store.list_sessions(
            ctx.uid,
            target_id=target_id,
            target_type=target_type,
            offset=(page - 1) * page_size,
            limit=page_size,
        )

    def get_session_detail(self, ctx: RunContext, session_id: str) -> SessionDetail:
        session = self._require_session(ctx, session_id)
        steps = self._store.list_steps(session_id)
        latest = latest_results_by_step(self._store.list_results_for_steps(step.step_id for step in steps))
        return SessionDetail(
            session=session,
            steps=[StepDetail(step=step, result=latest.get(step.step_id)) for step in steps],
        )

    def todo_markdown(self, ctx: RunContext, session_id: str) -> str:
        detail = self.get_session_detail(ctx, session_id)
        return format_todo_md(detail.session, [item.step for item in detail.steps])

    # Runs ----------------------------------------------------------------------------
    def run_pilot(self, ctx: RunContext, session_id: str, mode: StepMode = StepMode.SUBTASK) -> List[PilotStep]:
        """Dispatch the current epoch's subtask steps (or its summary step)."""
        mode = StepMode(mode)
        session = self._require_session(ctx, session_id)
        if mode == StepMode.SUMMARY:
            if self._store.list_steps(session_id, epoch=session.current_epoch, mode=StepMode.SUMMARY):
                LOGGER.debug("Summary already dispatched for epoch %d of %s", session.current_epoch, session_id)
                return []
            return self.run_summary(ctx, session_id)

        try:
            if self._store.list_steps(session_id, epoch=session.current_epoch, mode=StepMode.SUBTASK):
                LOGGER.debug("Subtasks already dispatched for epoch %d of %s", session.current_epoch, session_id)
                return []

            canvas_items = list(self._canvas.get_canvas_content_items(ctx, session.target_id))
            LOGGER.info(
                "Epoch (%d/%d) for session %s started",
                session.current_epoch,
                session.max_epoch,
                session_id,
            )
            plan = self._engine.run(ctx, session_id, session.query, self._available_tools(), canvas_items)

            created = self._dispatch_subtasks(ctx, session, plan, canvas_items)
            if not created:
                self._store.update_session(session_id, status=SessionStatus.FINISH)
                LOGGER.info("Pilot session %s finished due to no steps", session_id)
                return []

            self._store.update_session(session_id, status=SessionStatus.WAITING)
            return created
        except Exception as error:
            LOGGER.error("Error running pilot for session %s: %s", session_id, error)
            self._mark_failed(session_id)
            raise

    def run_summary(self, ctx: RunContext, session_id: str) -> List[PilotStep]:
        """Dispatch the single summary step that closes the current epoch."""
        session = self._require_session(ctx, session_id)
        try:
            if session.current_epoch >= session.max_epoch:
                LOGGER.info("Pilot session %s finished due to max epoch", session_id)
                if session.status != SessionStatus.FINISH:
                    self._store.update_session(session_id, status=SessionStatus.FINISH)
                return []

            skill_name = self._settings.summary_skill
            if not self._has_skill(skill_name):
                LOGGER.warning("Skill %s not found, skipping summary step", skill_name)
                return []

            canvas_items = list(self._canvas.get_canvas_content_items(ctx, session.target_id))
            all_steps = self._store.list_steps(session_id)
            recommended = self._build_context(canvas_items, [step.entity_id for step in all_steps])

            subtask_steps = [
                step for step in all_steps if step.epoch == session.current_epoch and step.mode == StepMode.SUBTASK
            ]
            bundle = self._build_context(canvas_items, [step.entity_id for step in subtask_steps])
            latest = latest_results_by_step(self._store.list_results_for_steps(step.step_id for step in subtask_steps))
            titles = [latest[step.step_id].title for step in subtask_steps if step.step_id in latest]

            skill_input = build_summary_skill_input(session.query, session.current_epoch, session.max_epoch, titles)
            step = self._create_step(
                ctx,
                session,
                name=skill_input["query"],
                mode=StepMode.SUMMARY,
                skill_name=skill_name,
                skill_input=skill_input,
                bundle=bundle,
                dispatch_bundle=recommended,
                raw_output={},
            )
            self._store.update_session(session_id, status=SessionStatus.WAITING)
            return [step]
        except Exception as error:
            LOGGER.error("Error running pilot summary for session %s: %s", session_id, error)
            self._mark_failed(session_id)
            raise

    def sync_step(self, ctx: RunContext, step_id: str) -> None:
        """Advance the session when every step of the step's epoch has finished."""
        session_id: Optional[str] = None
        try:
            step = self._store.get_step(step_id)
            if step is None:
                LOGGER.warning("Pilot step %s not found", step_id)
                return
            session_id = step.session_id
            session = self._store.get_session(session_id)
            if session is None:
                LOGGER.warning("Pilot session %s not found", session_id)
                return

            epoch_steps = self._store.list_steps(session_id, epoch=step.epoch)
            subtask_steps = [item for item in epoch_steps if item.mode == StepMode.SUBTASK]
            summary_steps = [item for item in epoch_steps if item.mode == StepMode.SUMMARY]
            subtasks_done = bool(subtask_steps) and all(item.status == StepStatus.FINISH for item in subtask_steps)
            summaries_done = bool(summary_steps) and all(item.status == StepStatus.FINISH for item in summary_steps)
            reached_max_epoch = step.epoch > session.max_epoch - 1

            LOGGER.info(
                "Epoch (%d/%d) for session %s: steps are %s",
                session.current_epoch,
                session.max_epoch,
                session_id,
                "finished" if summaries_done else "not finished",
            )

            if subtasks_done and not summary_steps:
                self._enqueue_run(
                    ctx,
                    session_id,
                    StepMode.SUMMARY,
                    name=f"run-pilot-{session_id}-{session.current_epoch}-summary",
                )
                return

            if not (subtasks_done and summaries_done):
                return

            if step.epoch != session.current_epoch or session.status in (SessionStatus.FINISH, SessionStatus.FAILED):
                LOGGER.debug("Epoch %d of session %s already advanced", step.epoch, session_id)
                return

            if reached_max_epoch:
                self._store.update_session(session_id, status=SessionStatus.FINISH)
                LOGGER.info("Pilot session %s finished after epoch %d", session_id, step.epoch)
                return

            next_epoch = session.current_epoch + 1
            self._store.update_session(session_id, status=SessionStatus.EXECUTING, current_epoch=next_epoch)
            self._enqueue_run(ctx, session_id, StepMode.SUBTASK, name=f"run-pilot-{session_id}-{next_epoch}")
        except Exception as error:
            LOGGER.error("Error syncing pilot step %s: %s", step_id, error)
            if session_id is not None:
                self._mark_failed(session_id)
            raise

    def complete_step(
        self,
        ctx: RunContext,
        result_id: str,
        *,
        status: StepStatus = StepStatus.FINISH,
        content: str = "",
        errors: Optional[Any] = None,
        output_url: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> Optional[PilotStep]:
        """Record a skill's completion report and queue a step sync."""
        result = self._store.get_result(result_id)
        if result is None:
            raise LookupError(f"Action result {result_id} not found")

        status = StepStatus(status)
        self._store.save_result(
            result.model_copy(
                update={
                    "status": status,
                    "errors": errors if errors is not None else [],
                    "output_url": output_url,
                    "storage_key": storage_key,
                }
            )
        )
        if content:
            self._store.save_action_step(
                ActionStep(result_id=result_id, version=result.version, order=0, name="answer", content=content)
            )

        if not result.pilot_step_id:
            return None
        step = self._store.get_step(result.pilot_step_id)
        if step is None:
            LOGGER.warning("Pilot step %s for result %s not found", result.pilot_step_id, result_id)
            return None

        self._store.update_step_status(step.step_id, status)
        if result.target_type == "canvas":
            self._canvas.upsert_item(
                ctx,
                result.target_id,
                CanvasContentItem(id=result_id, type="skillResponse", title=result.title, content=content),
            )
        self._queue.add(
            Job(
                name=f"sync-step-{step.step_id}",
                kind=JobKind.SYNC_STEP,
                session_id=step.session_id,
                payload={"uid": ctx.uid, "locale": ctx.locale, "step_id": step.step_id},
            )
        )
        return self._store.get_step(step.step_id)

    def handle_job(self, job: Job) -> None:
        """Queue handler: route a job to the run or sync entry point."""
        ctx = RunContext(uid=str(job.payload.get("uid") or ""), locale=job.payload.get("locale"))
        if job.kind == JobKind.RUN_PILOT:
            self.run_pilot(ctx, job.session_id, StepMode(job.payload.get("mode") or StepMode.SUBTASK.value))
        elif job.kind == JobKind.SYNC_STEP:
            self.sync_step(ctx, str(job.payload["step_id"]))
        else:
            raise ValueError(f"Unsupported job kind: {job.kind}")

    # Helpers -------------------------------------------------------------------------
    def _require_session(self, ctx: RunContext, session_id: str) -> PilotSession:
        session = self._store.get_session(session_id, uid=ctx.uid)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _mark_failed(self, session_id: str) -> None:
        try:
            self._store.update_session(session_id, status=SessionStatus.FAILED)
            LOGGER.info("Pilot session %s status set to failed due to error", session_id)
        except Exception as update_error:
            LOGGER.error("Failed to update session %s status to failed: %s", session_id, update_error)

    def _enqueue_run(self, ctx: RunContext, session_id: str, mode: StepMode, *, name: str) -> None:
        self._queue.add(
            Job(
                name=name,
                kind=JobKind.RUN_PILOT,
                session_id=session_id,
                payload={"uid": ctx.uid, "locale": ctx.locale, "mode": mode.value},
            )
        )

    def _available_tools(self) -> List[Toolset]:
        if self._toolsets is not None:
            return list(self._toolsets)
        return skills_as_toolsets(self._dispatcher.list_skills())

    def _has_skill(self, name: str) -> bool:
        return any(skill.name == name for skill in self._dispatcher.list_skills())

    def _build_context(
        self,
        canvas_items: Sequence[CanvasContentItem],
        context_item_ids: Sequence[Optional[str]],
    ) -> ContextBundle:
        return build_context_and_history(canvas_items, context_item_ids, threshold=self._settings.match_threshold)

    def _open_subtasks(self, plan: ProgressPlan) -> List[ProgressSubtask]:
        stage = plan.current_stage
        if stage is None:
            return []
        open_subtasks = [subtask for subtask in stage.subtasks if subtask.status not in TERMINAL_SUBTASK_STATUSES]
        return open_subtasks[: self._settings.max_steps_per_epoch]

    def _dispatch_subtasks(
        self,
        ctx: RunContext,
        session: PilotSession,
        plan: ProgressPlan,
        canvas_items: Sequence[CanvasContentItem],
    ) -> List[PilotStep]:
        subtasks = self._open_subtasks(plan)
        if not subtasks:
            return []

        skill_name = self._settings.default_skill
        if not self._has_skill(skill_name):
            LOGGER.warning("Skill %s not found, skipping %d subtask(s)", skill_name, len(subtasks))
            return []

        previous_summaries = self._store.list_steps(
            session.session_id,
            epoch=session.current_epoch - 1,
            mode=StepMode.SUMMARY,
        )
        bundle = self._build_context(canvas_items, [step.entity_id for step in previous_summaries])
        stage = plan.current_stage

        created: List[PilotStep] = []
        for subtask in subtasks:
            skill_input = build_subtask_skill_input(session.query, subtask.query)
            step = self._create_step(
                ctx,
                session,
                name=subtask.name,
                mode=StepMode.SUBTASK,
                skill_name=skill_name,
                skill_input=skill_input,
                bundle=bundle,
                dispatch_bundle=bundle,
                raw_output={
                    "subtask_id": subtask.id,
                    "name": subtask.name,
                    "query": subtask.query,
                    "skill_name": skill_name,
                    "priority": stage.priority if stage is not None else None,
                    "workflow_stage": stage.name if stage is not None else None,
                },
            )
            created.append(step)
            self._extract_variables(ctx, session.session_id, subtask.query)
        return created

    def _create_step(
        self,
        ctx: RunContext,
        session: PilotSession,
        *,
        name: str,
        mode: StepMode,
        skill_name: str,
        skill_input: Dict[str, Any],
        bundle: ContextBundle,
        dispatch_bundle: ContextBundle,
        raw_output: Dict[str, Any],
    ) -> PilotStep:
        step_id = gen_step_id()
        result_id = gen_result_id()
        self._store.save_result(
            ActionResult(
                result_id=result_id,
                uid=ctx.uid,
                title=name,
                pilot_step_id=step_id,
                pilot_session_id=session.session_id,
                skill_name=skill_name,
                status=StepStatus.WAITING,
                input=skill_input,
                context=bundle.context,
                history=bundle.history,
                target_id=session.target_id,
                target_type=session.target_type,
            )
        )
        step = self._store.create_step(
            PilotStep(
                step_id=step_id,
                session_id=session.session_id,
                name=name,
                epoch=session.current_epoch,
                mode=mode,
                status=StepStatus.EXECUTING,
                entity_id=result_id,
                raw_output=raw_output,
            )
        )
        if session.target_type == "canvas":
            self._canvas.upsert_item(
                ctx,
                session.target_id,
                CanvasContentItem(id=result_id, type="skillResponse", title=name),
            )
        self._dispatcher.send_invoke_skill_task(
            ctx,
            SkillInvocation(
                result_id=result_id,
                skill_name=skill_name,
                input=skill_input,
                context=dispatch_bundle.context,
                history=dispatch_bundle.history,
                target_id=session.target_id,
                target_type=session.target_type,
            ),
        )
        return step

    def _extract_variables(self, ctx: RunContext, session_id: str, query: str) -> None:
        if self._variable_extractor is None:
            return
        try:
            self._variable_extractor.extract(ctx, session_id, query)
        except Exception as error:
            LOGGER.warning("Variable extraction failed for session %s: %s", session_id, error)


__all__ = [
    "CanvasProvider",
    "ContextBundle",
    "InMemoryCanvas",
    "MAX_EPOCH",
    "MAX_STEPS_PER_EPOCH",
    "PilotService",
    "SessionDetail",
    "SessionNotFoundError",
    "SessionRequest",
    "StepDetail",
    "build_context_and_history",
]
