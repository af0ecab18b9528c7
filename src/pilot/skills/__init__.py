"""Skill dispatch collaborators used by the epoch driver."""

from .dispatch import (
    DEFAULT_SKILLS,
    LocalSkillDispatcher,
    SkillDescriptor,
    SkillDispatcher,
    SkillInvocation,
    VariableExtractor,
    render_local_answer,
    skills_as_toolsets,
)

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
