"""Explicit per-call context threaded through the driver and the plan engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(slots=True, frozen=True)
class RunContext:
    """Identity of the acting user plus their output preferences."""

    uid: str
    locale: Optional[str] = None

    def with_locale(self, locale: Optional[str]) -> "RunContext":
        return RunContext(uid=self.uid, locale=locale)


__all__ = ["RunContext"]
