"""Progress plan records and the pure transformations applied to them.

A plan is an ordered list of stages, one per epoch, each holding the subtasks
planned (or discovered) for that epoch. The plan is persisted as a single JSON
blob on the owning session using camelCase keys.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(clock: Clock = utc_now) -> str:
    """Render the clock's current time the way plans store timestamps."""
    return clock().astimezone(timezone.utc).isoformat()


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SubtaskStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_SUBTASK_STATUSES = frozenset({SubtaskStatus.COMPLETED, SubtaskStatus.FAILED})


class PlanRecord(BaseModel):
    """Base model serialised with camelCase keys and tolerant of unknown ones."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        use_enum_values=False,
    )


class ProgressSubtask(PlanRecord):
    """One unit of agent work inside a stage."""

    id: str
    name: str
    query: str = ""
    status: SubtaskStatus = SubtaskStatus.PENDING
    output: Optional[str] = None
    result_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class ProgressStage(PlanRecord):
    """Per-epoch container of subtasks and their aggregate progress."""

    id: Optional[str] = None
    name: str
    description: str = ""
    objectives: List[str] = Field(default_factory=list)
    tool_categories: List[str] = Field(default_factory=list)
    priority: Optional[int] = None
    summary: str = ""
    status: StageStatus = StageStatus.PENDING
    stage_progress: int = 0
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    subtasks: List[ProgressSubtask] = Field(default_factory=list)


class ProgressPlan(PlanRecord):
    """Root aggregate tracking every stage of one pilot session."""

    stages: List[ProgressStage] = Field(default_factory=list)
    current_stage_index: int = Field(default=0, ge=0)
    overall_progress: int = 0
    last_updated: Optional[str] = None
    planning_logic: Optional[str] = None
    user_intent: Optional[str] = None
    estimated_total_epochs: Optional[int] = None

    def stage_at(self, index: int) -> Optional[ProgressStage]:
        if 0 <= index < len(self.stages):
            return self.stages[index]
        return None

    @property
    def current_stage(self) -> Optional[ProgressStage]:
        return self.stage_at(self.current_stage_index)


def round_half_up(value: float) -> int:
    """Round .5 upwards rather than to the nearest even integer."""
    return int(math.floor(value + 0.5))


def map_step_status(step_status: object) -> SubtaskStatus:
    """Translate an execution step status into the subtask vocabulary."""
    value = getattr(step_status, "value", step_status)
    if value == "waiting":
        return SubtaskStatus.PENDING
    if value == "executing":
        return SubtaskStatus.EXECUTING
    if value == "finish":
        return SubtaskStatus.COMPLETED
    if value == "failed":
        return SubtaskStatus.FAILED
    return SubtaskStatus.PENDING


def calculate_overall_progress(stages: Sequence[ProgressStage]) -> int:
    """Aggregate stage progress: completed stages count 100, pending count 0."""
    total = len(stages)
    if total == 0:
        return 0

    progress = 0
    for stage in stages:
        if stage.status == StageStatus.COMPLETED:
            progress += 100
        elif stage.status == StageStatus.IN_PROGRESS:
            progress += stage.stage_progress or 0
    return round_half_up(progress / total)


def refresh_overall_progress(plan: ProgressPlan) -> ProgressPlan:
    plan.overall_progress = calculate_overall_progress(plan.stages)
    return plan


def dump_plan(plan: ProgressPlan) -> str:
    """Serialise ``plan`` into the JSON blob stored on the session."""
    return json.dumps(plan.model_dump(mode="json", by_alias=True, exclude_none=True))


def load_plan(payload: Optional[str]) -> Optional[ProgressPlan]:
    """Parse a persisted plan, returning ``None`` for empty or malformed input."""
    if not payload or not payload.strip():
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as error:
        LOGGER.warning("Discarding unparsable progress plan: %s", error)
        return None
    if not isinstance(data, dict):
        LOGGER.warning("Discarding progress plan with non-object payload (%s)", type(data).__name__)
        return None
    try:
        return ProgressPlan.model_validate(data)
    except ValidationError as error:
        LOGGER.warning("Discarding progress plan that failed validation: %s", error)
        return None


__all__ = [
    "Clock",
    "ProgressPlan",
    "ProgressStage",
    "ProgressSubtask",
    "StageStatus",
    "SubtaskStatus",
    "TERMINAL_SUBTASK_STATUSES",
    "calculate_overall_progress",
    "dump_plan",
    "iso_timestamp",
    "load_plan",
    "map_step_status",
    "refresh_overall_progress",
    "round_half_up",
    "utc_now",
]
