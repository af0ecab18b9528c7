"""Prompt templates and formatting helpers shared by the planner and the driver."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from .memory.schema import PilotSession, PilotStep, StepStatus
from .planning.progress import ProgressPlan, StageStatus
from .structured import CanvasContentItem, Toolset

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object that satisfies the documented response schema. "
    "Do not include markdown fences, explanations, or trailing text. "
    "Use double-quoted keys and strings."
)

PLANNER_SYSTEM_PROMPT = (
    "You are a task planner. Split the user's request into sequential stages, one per epoch, "
    "and produce independent subtasks that can run in parallel for the current stage. "
    f"{JSON_RESPONSE_INSTRUCTION}"
)


def format_canvas_content(items: Sequence[CanvasContentItem]) -> str:
    """Render canvas items as numbered markdown sections separated by rules."""
    if not items:
        return ""

    sections: list[str] = []
    for index, item in enumerate(items):
        item_id = item.id or "unknown-id"
        item_type = item.type or "unknown-type"
        header = f"## Canvas Item {index + 1} (ID: {item_id}, Type: {item_type})"

        if item_type == "skillResponse":
            sections.append(
                f"{header}\n**Question:** {item.title or 'No title'}\n"
                f"**Answer:**\n{item.content or 'No content'}\n**Context ID:** {item_id}"
            )
            continue

        if item_type == "document" and item.title and (item.content or item.content_preview):
            if item.content:
                body = f"**Document Content:**\n{item.content}"
            else:
                body = f"**Document Preview:**\n{item.content_preview}"
            sections.append(f"{header}\n**Document Title:** {item.title}\n{body}\n**Context ID:** {item_id}")
            continue

        if item_type == "codeArtifact":
            code = item.content or item.content_preview or "No code available"
            sections.append(
                f"{header}\n**Code Snippet:** {item.title or 'Untitled Code'}\n"
                f"```\n{code}\n```\n**Context ID:** {item_id}"
            )
            continue

        if item.title and (item.content or item.content_preview):
            sections.append(
                f"{header}\n**Title:** {item.title}\n"
                f"**Content:**\n{item.content or item.content_preview}\n**Context ID:** {item_id}"
            )

    return "\n\n---\n\n".join(sections)


def format_toolset(toolset: Toolset) -> str:
    description = toolset.description or "No description available"
    tool_lines = "\n".join(
        f"  - {tool.name}: {tool.description or 'No description available'}" for tool in toolset.tools
    )
    return (
        f"## Toolset: {toolset.name or toolset.key}\n"
        f"**Key:** {toolset.key}\n"
        f"**Description:** {description}\n"
        f"**Tools:**\n{tool_lines}"
    )


def format_toolsets(toolsets: Sequence[Toolset]) -> str:
    if not toolsets:
        return "No toolsets available"
    return "\n---\n\n".join(f"{format_toolset(toolset)}\n" for toolset in toolsets)


def format_todo_md(session: PilotSession, steps: Sequence[PilotStep]) -> str:
    """Render a session and its steps as a markdown todo list."""
    completed = [step for step in steps if step.status == StepStatus.FINISH]
    pending = [step for step in steps if step.status != StepStatus.FINISH]

    lines = [
        f"# Todo: {session.title or 'Research Plan'}",
        "",
        "## Original Request",
        session.query,
        "",
        "## Status",
        session.status.value,
        "",
        f"## Current Epoch: {session.current_epoch + 1}/{session.max_epoch + 1}",
        "",
        "## Tasks",
        "",
        "### Completed",
    ]
    lines.extend(f"- [x] {step.step_id}: {step.name}" for step in completed)
    lines.append("")
    lines.append("### Pending")
    for step in pending:
        raw = step.raw_output or {}
        priority = raw.get("priority")
        lines.append(f"- [ ] {step.name}: {raw.get('query', '')} (Priority: {priority if priority is not None else 3})")
        workflow_stage = raw.get("workflow_stage")
        if workflow_stage:
            lines.append(f"  - Stage: {workflow_stage}")
    return "\n".join(lines) + "\n"


def render_progress_context(plan: ProgressPlan) -> str:
    """Summarise an existing plan so the planner can re-optimise remaining stages."""
    completed = [stage for stage in plan.stages if stage.status == StageStatus.COMPLETED]
    pending = [stage for stage in plan.stages if stage.status == StageStatus.PENDING]
    current = next((stage for stage in plan.stages if stage.status == StageStatus.IN_PROGRESS), None)

    lines = [
        "## Current Progress",
        f"Overall progress: {plan.overall_progress}%",
        f"Completed stages: {len(completed)}/{len(plan.stages)}",
        f"Current stage: {current.name if current else 'None'}",
        f"Pending stages: {', '.join(stage.name for stage in pending)}",
    ]
    if completed:
        lines.append("")
        lines.append("### Completed Stages")
        for stage in completed:
            lines.append(f"- {stage.name}: {stage.description}")
            if stage.summary:
                lines.append(f"  Summary: {stage.summary}")
    if current is not None:
        lines.append("")
        lines.append("### Current Stage")
        lines.append(f"- Name: {current.name}")
        lines.append(f"- Description: {current.description}")
        lines.append(f"- Objectives: {', '.join(current.objectives)}")
        lines.append(f"- Progress: {current.stage_progress}%")
        lines.append(f"- Tool categories: {', '.join(current.tool_categories)}")
    return "\n".join(lines)


def build_planning_prompt(
    question: str,
    existing_plan: Optional[ProgressPlan],
    toolsets: Sequence[Toolset],
    canvas_items: Sequence[CanvasContentItem],
    locale: Optional[str] = None,
) -> str:
    """Compose the user prompt for initial planning or re-planning."""
    initial = existing_plan is None
    sections = [
        "## Planning Mode",
        "Initial planning: create a new execution plan from scratch."
        if initial
        else "Re-planning: adjust the remaining stages using the progress so far.",
        "",
        "## User Request",
        f'"{question}"',
        "",
        "## Available Tools",
        format_toolsets(toolsets),
        "",
        "## Canvas Content",
        format_canvas_content(canvas_items) or "No existing canvas content",
    ]
    if existing_plan is not None:
        sections.extend(["", render_progress_context(existing_plan)])
    sections.extend(
        [
            "",
            "## Requirements",
            "- Stages run sequentially; each stage builds on the previous one.",
            "- Subtasks of the current stage must be independent of each other.",
            "- Give every subtask a short unique name and a self-contained query.",
        ]
    )
    if locale:
        sections.extend(["", "## Language", f"All output should be in {locale}."])
    return "\n".join(sections)


def build_subtask_skill_input(user_question: str, query: str) -> Dict[str, Any]:
    return {
        "query": query or user_question,
        "original_query": user_question,
    }


def build_summary_skill_input(
    user_question: str,
    current_epoch: int,
    max_epoch: int,
    subtask_titles: Sequence[str],
) -> Dict[str, Any]:
    """Describe the summary step that closes an epoch."""
    titles = [title for title in subtask_titles if title]
    listing = "\n".join(f"- {title}" for title in titles) or "- (no subtasks)"
    return {
        "query": f"Summarize epoch {current_epoch + 1}/{max_epoch + 1} progress on: {user_question}",
        "original_query": user_question,
        "instructions": (
            "Combine the findings of the following subtasks into a concise summary "
            f"that the next epoch can build on:\n{listing}"
        ),
    }


__all__ = [
    "JSON_RESPONSE_INSTRUCTION",
    "PLANNER_SYSTEM_PROMPT",
    "build_planning_prompt",
    "build_subtask_skill_input",
    "build_summary_skill_input",
    "format_canvas_content",
    "format_todo_md",
    "format_toolset",
    "format_toolsets",
    "render_progress_context",
]
