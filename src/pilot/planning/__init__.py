"""
Progress planning: plan records, stage synchronisation, and the plan engine.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "IntentAnalysisService": "pilot.planning.intent",
    "PlanWithSubtasks": "pilot.planning.intent",
    "PlanEngine": "pilot.planning.engine",
    "PlanEngineError": "pilot.planning.engine",
    "ReplanOutcome": "pilot.planning.engine",
    "ProgressPlan": "pilot.planning.progress",
    "ProgressStage": "pilot.planning.progress",
    "ProgressSubtask": "pilot.planning.progress",
    "StageSynchronizer": "pilot.planning.sync",
    "StageSyncError": "pilot.planning.sync",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning helpers so leaf modules stay cheap to import."""
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
