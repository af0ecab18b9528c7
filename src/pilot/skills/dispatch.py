"""Skill dispatch collaborator: hands subtask and summary work to executing agents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..context import RunContext
from ..structured import Toolset

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SkillDescriptor:
    name: str
    description: str = ""


DEFAULT_SKILLS: tuple[SkillDescriptor, ...] = (
    SkillDescriptor("commonQnA", "Answer general questions directly."),
    SkillDescriptor("webSearch", "Search the web and summarise the findings."),
    SkillDescriptor("librarySearch", "Search the user's knowledge base."),
    SkillDescriptor("generateDoc", "Write a document from the provided context."),
    SkillDescriptor("codeArtifacts", "Produce a runnable code artifact."),
)


@dataclass(slots=True)
class SkillInvocation:
    """Request to run one skill for one action result."""

    result_id: str
    skill_name: str
    input: Dict[str, Any]
    context: Dict[str, Any] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)
    target_id: Optional[str] = None
    target_type: Optional[str] = None

    @property
    def query(self) -> str:
        return str(self.input.get("query") or "")


class SkillDispatcher(Protocol):
    def list_skills(self) -> Sequence[SkillDescriptor]:
        ...

    def send_invoke_skill_task(self, ctx: RunContext, invocation: SkillInvocation) -> None:
        ...


class VariableExtractor(Protocol):
    def extract(self, ctx: RunContext, session_id: str, query: str) -> None:
        ...


class LocalSkillDispatcher:
    """Dispatcher that records invocations for a local runner to complete later."""

    def __init__(self, skills: Sequence[SkillDescriptor] = DEFAULT_SKILLS) -> None:
        self._skills = list(skills)
        self._pending: List[SkillInvocation] = []
        self.sent: List[SkillInvocation] = []

    def list_skills(self) -> Sequence[SkillDescriptor]:
        return list(self._skills)

    def send_invoke_skill_task(self, ctx: RunContext, invocation: SkillInvocation) -> None:
        LOGGER.info("Dispatching skill %s for result %s", invocation.skill_name, invocation.result_id)
        self._pending.append(invocation)
        self.sent.append(invocation)

    def take_pending(self) -> List[SkillInvocation]:
        pending, self._pending = self._pending, []
        return pending


def skills_as_toolsets(skills: Sequence[SkillDescriptor]) -> List[Toolset]:
    return [Toolset(key=skill.name, name=skill.name, description=skill.description) for skill in skills]


def render_local_answer(invocation: SkillInvocation) -> str:
    """Deterministic answer used when skills run without a model."""
    query = invocation.query or "the request"
    sources = sum(len(items) for items in invocation.context.values() if isinstance(items, list))
    return f"[{invocation.skill_name}] Completed: {query} (context items: {sources}, history: {len(invocation.history)})"


__all__ = [
    "DEFAULT_SKILLS",
    "LocalSkillDispatcher",
    "SkillDescriptor",
    "SkillDispatcher",
    "SkillInvocation",
    "VariableExtractor",
    "render_local_answer",
    "skills_as_toolsets",
]
