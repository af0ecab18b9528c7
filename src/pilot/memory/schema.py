"""Typed records tracked by the pilot session store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class SessionStatus(str, Enum):
    """Lifecycle states for a pilot session."""

    INIT = "init"
    EXECUTING = "executing"
    WAITING = "waiting"
    FINISH = "finish"
    FAILED = "failed"


class StepMode(str, Enum):
    """Kinds of execution steps emitted per epoch."""

    SUBTASK = "subtask"
    SUMMARY = "summary"


class StepStatus(str, Enum):
    """Runtime states shared by execution steps and their results."""

    WAITING = "waiting"
    EXECUTING = "executing"
    FINISH = "finish"
    FAILED = "failed"


class PilotSession(RecordModel):
    """One orchestration session driven across several epochs."""

    session_id: str
    uid: str
    title: str = ""
    input: Dict[str, Any] = Field(default_factory=dict)
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    max_epoch: int = 3
    current_epoch: int = 0
    status: SessionStatus = SessionStatus.INIT
    progress: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def query(self) -> str:
        value = self.input.get("query")
        return str(value) if value else ""


class PilotStep(RecordModel):
    """Ground-truth execution record for one dispatched unit of work."""

    step_id: str
    session_id: str
    name: str
    epoch: int
    mode: StepMode = StepMode.SUBTASK
    status: StepStatus = StepStatus.WAITING
    entity_id: Optional[str] = None
    entity_type: str = "skillResponse"
    raw_output: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ActionResult(RecordModel):
    """Output produced by a skill invocation for a pilot step."""

    result_id: str
    version: int = 0
    uid: str = ""
    title: str = ""
    pilot_step_id: Optional[str] = None
    pilot_session_id: Optional[str] = None
    skill_name: str = ""
    status: StepStatus = StepStatus.WAITING
    output_url: Optional[str] = None
    storage_key: Optional[str] = None
    errors: Any = Field(default_factory=list)
    input: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    history: List[Dict[str, Any]] = Field(default_factory=list)
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ActionStep(RecordModel):
    """Ordered content record produced while a result was generated."""

    result_id: str
    version: int = 0
    order: int = 0
    name: str = ""
    content: str = ""
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "ActionResult",
    "ActionStep",
    "PilotSession",
    "PilotStep",
    "RecordModel",
    "SessionStatus",
    "StepMode",
    "StepStatus",
    "utc_now",
]
