"""Tool integrations exposed by the pilot runtime."""

from .planning_logs import PlanningLogEntry, json_safe, load_planning_log, write_planning_log

__all__ = [
    "PlanningLogEntry",
    "json_safe",
    "load_planning_log",
    "write_planning_log",
]
