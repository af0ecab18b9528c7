"""Identifier factories for sessions, steps, and results."""

from __future__ import annotations

import time
from uuid import uuid4


def _generate(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:20]}"


def gen_session_id() -> str:
    return _generate("ps")


def gen_step_id() -> str:
    return _generate("pst")


def gen_result_id() -> str:
    return _generate("ar")


def gen_subtask_id(index: int) -> str:
    """Mirror the ``subtask_<millis>_<index>`` ids produced at planning time."""
    return f"subtask_{int(time.time() * 1000)}_{index}"


__all__ = ["gen_result_id", "gen_session_id", "gen_step_id", "gen_subtask_id"]
