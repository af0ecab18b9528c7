"""Planning collaborator: turn a question (and the plan so far) into stages and subtasks."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..models.llm_client import LLMClient, LLMClientError, LLMRequest
from ..prompts import PLANNER_SYSTEM_PROMPT, build_planning_prompt
from ..structured import CanvasContentItem, Toolset
from ..tools.planning_logs import json_safe, write_planning_log
from ..utils.ids import gen_step_id, gen_subtask_id
from .progress import (
    Clock,
    PlanRecord,
    ProgressPlan,
    ProgressStage,
    ProgressSubtask,
    StageStatus,
    SubtaskStatus,
    iso_timestamp,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_STAGE_NAME = "General Task Execution"
DEFAULT_SUBTASK_NAME = "Execute General Task"
DEFAULT_PLANNING_LOGIC = "Default plan with subtasks generated due to analysis failure"


class PlannedStage(BaseModel):
    """Stage as proposed by the model."""

    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""
    objectives: List[str] = Field(default_factory=list)
    tool_categories: List[str] = Field(default_factory=list)
    priority: int = 1
    estimated_epochs: int = 1
    status: StageStatus = StageStatus.PENDING


class PlannedSubtask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    query: str
    status: SubtaskStatus = SubtaskStatus.PENDING


class PlanningResponse(BaseModel):
    """Structured output requested from the planning model."""

    model_config = ConfigDict(extra="ignore")

    user_intent: str
    task_complexity: Literal["simple", "medium", "complex"] = "medium"
    stages: List[PlannedStage] = Field(default_factory=list)
    current_stage_subtasks: List[PlannedSubtask] = Field(default_factory=list)
    planning_logic: str = ""
    estimated_total_epochs: int = 1
    previous_execution_summary: Optional[str] = None


class PlanWithSubtasks(PlanRecord):
    """Candidate plan returned by a planning service."""

    stages: List[ProgressStage] = Field(default_factory=list)
    current_stage_index: int = 0
    overall_progress: Optional[int] = None
    last_updated: Optional[str] = None
    planning_logic: Optional[str] = None
    user_intent: Optional[str] = None
    estimated_total_epochs: Optional[int] = None
    current_stage_subtasks: List[ProgressSubtask] = Field(default_factory=list)


class PlanningService(Protocol):
    def analyze_intent_and_plan(
        self,
        question: str,
        existing_plan: Optional[ProgressPlan],
        available_tools: Sequence[Toolset],
        canvas_items: Sequence[CanvasContentItem],
        locale: Optional[str] = None,
    ) -> Optional[PlanWithSubtasks]:
        ...


def default_plan(question: str, *, clock: Clock = utc_now) -> PlanWithSubtasks:
    """Single-stage plan used whenever the planning model cannot produce one."""
    now = iso_timestamp(clock)
    stage = ProgressStage(
        id=gen_step_id(),
        name=DEFAULT_STAGE_NAME,
        description="Default stage for task execution",
        objectives=["Complete the requested task"],
        tool_categories=["web_search", "analysis", "generation"],
        priority=1,
        status=StageStatus.PENDING,
        created_at=now,
    )
    subtask = ProgressSubtask(
        id=gen_subtask_id(0),
        name=DEFAULT_SUBTASK_NAME,
        query=question,
        status=SubtaskStatus.PENDING,
        created_at=now,
    )
    return PlanWithSubtasks(
        stages=[stage],
        current_stage_index=0,
        overall_progress=0,
        last_updated=now,
        planning_logic=DEFAULT_PLANNING_LOGIC,
        user_intent=question,
        estimated_total_epochs=2,
        current_stage_subtasks=[subtask],
    )


def _stage_from_planned(planned: PlannedStage, history: Optional[ProgressStage], now: str) -> ProgressStage:
    """Build a plan stage, keeping the synchronised state of a stage already tracked.

    A stage without history gets a status that agrees with zero progress: a
    declared ``completed`` counts as fully done, anything else starts pending.
    """
    stage = ProgressStage(
        id=gen_step_id(),
        name=planned.name,
        description=planned.description,
        objectives=list(planned.objectives),
        tool_categories=list(planned.tool_categories),
        priority=planned.priority,
        created_at=now,
    )
    if history is not None:
        return stage.model_copy(
            update={
                "id": history.id or stage.id,
                "created_at": history.created_at or now,
                "status": history.status,
                "stage_progress": history.stage_progress,
                "summary": history.summary,
                "started_at": history.started_at,
                "completed_at": history.completed_at,
                "subtasks": [subtask.model_copy(deep=True) for subtask in history.subtasks],
            }
        )
    if planned.status == StageStatus.COMPLETED:
        stage.status = StageStatus.COMPLETED
        stage.stage_progress = 100
        stage.started_at = now
        stage.completed_at = now
    return stage


def plan_from_response(
    response: PlanningResponse,
    existing_plan: Optional[ProgressPlan],
    *,
    clock: Clock = utc_now,
) -> PlanWithSubtasks:
    """Convert the model's structured output into plan records.

    Stages already present in ``existing_plan`` (matched by trimmed name, first
    match wins) keep their status, progress, summary, timestamps and subtasks.
    """
    now = iso_timestamp(clock)
    history: Dict[str, ProgressStage] = {}
    for previous in (existing_plan.stages if existing_plan else []):
        history.setdefault(previous.name.strip(), previous)

    stages = [_stage_from_planned(planned, history.get(planned.name.strip()), now) for planned in response.stages]
    subtasks = [
        ProgressSubtask(
            id=gen_subtask_id(index),
            name=planned.name,
            query=planned.query,
            status=planned.status,
            created_at=now,
        )
        for index, planned in enumerate(response.current_stage_subtasks)
    ]
    current_index = next(
        (index for index, planned in enumerate(response.stages) if planned.status == StageStatus.IN_PROGRESS),
        0,
    )
    return PlanWithSubtasks(
        stages=stages,
        current_stage_index=current_index,
        overall_progress=existing_plan.overall_progress if existing_plan else 0,
        last_updated=now,
        planning_logic=response.planning_logic or None,
        user_intent=response.user_intent or None,
        estimated_total_epochs=response.estimated_total_epochs,
        current_stage_subtasks=subtasks,
    )


class IntentAnalysisService:
    """LLM-backed planning service with a deterministic fallback plan."""

    def __init__(
        self,
        client: LLMClient,
        *,
        logs_root: Optional[Path] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._client = client
        self._logs_root = logs_root
        self._clock = clock

    def analyze_intent_and_plan(
        self,
        question: str,
        existing_plan: Optional[ProgressPlan],
        available_tools: Sequence[Toolset],
        canvas_items: Sequence[CanvasContentItem],
        locale: Optional[str] = None,
    ) -> PlanWithSubtasks:
        mode = "initial" if existing_plan is None else "replan"
        LOGGER.info("Starting %s intent analysis for %r", mode, question)

        prompt = build_planning_prompt(question, existing_plan, available_tools, canvas_items, locale)
        request_payload = {
            "question": question,
            "current_stage_index": existing_plan.current_stage_index if existing_plan else 0,
            "stages": [
                {
                    "name": stage.name,
                    "description": stage.description,
                    "objectives": stage.objectives,
                    "tool_categories": stage.tool_categories,
                    "status": stage.status.value,
                }
                for stage in (existing_plan.stages if existing_plan else [])
            ],
            "locale": locale,
        }
        llm_request = LLMRequest(
            prompt=prompt,
            system_prompt=PLANNER_SYSTEM_PROMPT,
            response_model=PlanningResponse,
            metadata={"phase": "planning", "request": request_payload},
        )
        attempts: list[dict[str, Any]] = []

        def _attempt_logger(
            payload: dict[str, Any],
            raw: str | None,
            parsed: Any,
            error: Exception | None,
            attempt: int,
        ) -> None:
            attempts.append(
                {
                    "attempt": attempt,
                    "raw": raw,
                    "parsed": json_safe(parsed),
                    "error": str(error) if error else None,
                }
            )

        try:
            response, _ = self._client.invoke_structured(llm_request, logger=_attempt_logger)
        except LLMClientError as error:
            LOGGER.warning("Planning failed (%s); using default plan", error)
            fallback = default_plan(question, clock=self._clock)
            self._write_log(mode, request_payload, llm_request, attempts, result=fallback, error=error)
            return fallback

        plan = plan_from_response(response, existing_plan, clock=self._clock)
        LOGGER.info(
            "Planning produced %d stage(s) with %d current stage subtask(s)",
            len(plan.stages),
            len(plan.current_stage_subtasks),
        )
        self._write_log(mode, request_payload, llm_request, attempts, result=plan)
        return plan

    def _write_log(
        self,
        mode: str,
        request: Any,
        llm_request: LLMRequest[Any],
        attempts: list[dict[str, Any]],
        *,
        result: Any | None = None,
        error: Exception | None = None,
    ) -> None:
        if self._logs_root is None:
            return
        write_planning_log(
            self._logs_root,
            mode=mode,
            request=request,
            prompt=llm_request.prompt,
            system_prompt=llm_request.system_prompt,
            attempts=attempts,
            result=result,
            error=error,
        )


__all__ = [
    "DEFAULT_PLANNING_LOGIC",
    "DEFAULT_STAGE_NAME",
    "DEFAULT_SUBTASK_NAME",
    "IntentAnalysisService",
    "PlanWithSubtasks",
    "PlannedStage",
    "PlannedSubtask",
    "PlanningResponse",
    "PlanningService",
    "default_plan",
    "plan_from_response",
]
