"""In-process job queue for pilot runs and step synchronisation."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

LOGGER = logging.getLogger(__name__)


class JobKind(str, Enum):
    RUN_PILOT = "run-pilot"
    SYNC_STEP = "sync-step"


@dataclass(slots=True)
class Job:
    """Unit of deferred work keyed by a unique name."""

    name: str
    kind: JobKind
    session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class DrainReport:
    processed: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.processed - len(self.failed)


class JobQueue:
    """FIFO of pending jobs, deduplicated by name while pending.

    Jobs are processed one at a time by :meth:`drain`, which serialises all
    work for a session as the plan engine requires.
    """

    def __init__(self) -> None:
        self._pending: Deque[Job] = deque()

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> List[Job]:
        return list(self._pending)

    def add(self, job: Job) -> bool:
        """Queue ``job`` unless one with the same name is already pending."""
        if any(existing.name == job.name for existing in self._pending):
            LOGGER.debug("Skipping duplicate job %s", job.name)
            return False
        self._pending.append(job)
        LOGGER.info("Queued %s job %s (%d pending)", job.kind.value, job.name, len(self._pending))
        return True

    def pop(self) -> Optional[Job]:
        if not self._pending:
            return None
        return self._pending.popleft()

    def clear(self) -> int:
        count = len(self._pending)
        self._pending.clear()
        return count

    def drain(self, handler: Callable[[Job], None], *, limit: Optional[int] = None) -> DrainReport:
        """Run ``handler`` over pending jobs, including ones queued while draining.

        A failing job is logged and recorded; the remaining jobs still run.
        """
        report = DrainReport()
        while self._pending and (limit is None or report.processed < limit):
            job = self._pending.popleft()
            report.processed += 1
            try:
                handler(job)
            except Exception as error:
                LOGGER.error("Job %s failed: %s", job.name, error)
                report.failed.append(job.name)
        return report


__all__ = ["DrainReport", "Job", "JobKind", "JobQueue"]
