from __future__ import annotations

import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pilot.context import RunContext  # noqa: E402
from pilot.memory.store import PilotStore  # noqa: E402
from pilot.planning.intent import PlanWithSubtasks  # noqa: E402
from pilot.planning.progress import ProgressPlan  # noqa: E402
from pilot.structured import CanvasContentItem, Toolset  # noqa: E402

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


@dataclass(slots=True)
class PlannerCall:
    question: str
    existing_plan: Optional[ProgressPlan]
    locale: Optional[str]


@dataclass(slots=True)
class ScriptedPlanner:
    """Planning service returning queued candidates (or raising queued errors)."""

    responses: List[Any] = field(default_factory=list)
    calls: List[PlannerCall] = field(default_factory=list)
    factory: Optional[Callable[[str, Optional[ProgressPlan]], Any]] = None

    def analyze_intent_and_plan(
        self,
        question: str,
        existing_plan: Optional[ProgressPlan],
        available_tools: Sequence[Toolset],
        canvas_items: Sequence[CanvasContentItem],
        locale: Optional[str] = None,
    ) -> Optional[PlanWithSubtasks]:
        self.calls.append(PlannerCall(question=question, existing_plan=existing_plan, locale=locale))
        if self.responses:
            response = self.responses.pop(0)
        elif self.factory is not None:
            response = self.factory(question, existing_plan)
        else:
            response = None
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def store(tmp_path: Path):
    with PilotStore(tmp_path / "pilot.sqlite") as pilot_store:
        yield pilot_store


@pytest.fixture()
def ctx() -> RunContext:
    return RunContext(uid="user-1")


@pytest.fixture()
def planner() -> ScriptedPlanner:
    return ScriptedPlanner()
