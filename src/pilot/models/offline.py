"""Deterministic stand-in for a hosted model, used by demos and tests."""

from __future__ import annotations

import json
from typing import Any, Dict, List

from .llm_client import LLMClient

__all__ = ["OfflineLLMClient", "is_offline_model"]

_STAGE_TEMPLATES: tuple[tuple[str, str, list[str]], ...] = (
    ("Information Gathering", "Collect background material relevant to the request.", ["web_search"]),
    ("Analysis", "Compare and analyse the gathered material.", ["analysis"]),
    ("Synthesis", "Produce the final deliverable from the analysis.", ["generation"]),
)


def is_offline_model(model_name: str) -> bool:
    key = model_name.strip().lower()
    return key in {"offline", "pilot-offline"} or key.endswith("-offline")


class OfflineLLMClient(LLMClient):
    """Synthesize schema-valid planning responses without network access."""

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        metadata = payload.get("metadata") or {}
        request = metadata.get("request") or {}
        if isinstance(request, str):
            try:
                request = json.loads(request)
            except json.JSONDecodeError:
                request = {}
        if metadata.get("phase") != "planning":
            return json.dumps({})
        return json.dumps(self._build_plan(request))

    def _build_plan(self, request: Dict[str, Any]) -> Dict[str, Any]:
        question = str(request.get("question") or "the request").strip()
        existing: List[Dict[str, Any]] = list(request.get("stages") or [])
        current = int(request.get("current_stage_index") or 0)

        if existing:
            stages = [
                {
                    "name": str(stage.get("name") or f"Stage {index + 1}"),
                    "description": str(stage.get("description") or ""),
                    "objectives": list(stage.get("objectives") or []),
                    "tool_categories": list(stage.get("tool_categories") or []),
                    "priority": index + 1,
                    "estimated_epochs": 1,
                    "status": _replanned_status(stage, index, current),
                }
                for index, stage in enumerate(existing)
            ]
        else:
            stages = [
                {
                    "name": name,
                    "description": description,
                    "objectives": [f"{name} for: {question}"],
                    "tool_categories": categories,
                    "priority": index + 1,
                    "estimated_epochs": 1,
                    "status": "in_progress" if index == 0 else "pending",
                }
                for index, (name, description, categories) in enumerate(_STAGE_TEMPLATES)
            ]

        subtasks: List[Dict[str, Any]] = []
        if current < len(stages):
            stage_name = stages[current]["name"]
            subtasks = [
                {
                    "name": f"{stage_name}: overview",
                    "query": f"Give an overview of {question}",
                    "status": "pending",
                },
                {
                    "name": f"{stage_name}: details",
                    "query": f"List the key details about {question}",
                    "status": "pending",
                },
            ]

        mode = "re-planning" if existing else "initial planning"
        return {
            "user_intent": question,
            "task_complexity": "medium",
            "stages": stages,
            "current_stage_subtasks": subtasks,
            "planning_logic": f"Offline {mode} with {len(stages)} sequential stage(s).",
            "estimated_total_epochs": len(stages),
            "previous_execution_summary": None,
        }


def _replanned_status(stage: Dict[str, Any], index: int, current: int) -> str:
    status = str(stage.get("status") or "pending")
    if status == "completed":
        return status
    if index == current:
        return "in_progress"
    return status if status in {"pending", "in_progress"} else "pending"
