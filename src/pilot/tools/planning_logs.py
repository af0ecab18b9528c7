"""Write and read structured logs of planner invocations."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

__all__ = ["PlanningLogEntry", "json_safe", "load_planning_log", "write_planning_log"]


@dataclass(slots=True)
class PlanningLogEntry:
    """In-memory representation of a stored planning log."""

    path: Path
    mode: str
    payload: Mapping[str, Any]

    @property
    def request(self) -> Mapping[str, Any]:
        value = self.payload.get("request")
        if isinstance(value, Mapping):
            return value
        return {}

    @property
    def session_id(self) -> str | None:
        candidate = self.payload.get("session_id")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
        return None

    @property
    def question(self) -> str:
        return str(self.request.get("question") or "")

    @property
    def result(self) -> Mapping[str, Any] | None:
        value = self.payload.get("result")
        if isinstance(value, Mapping):
            return value
        return None

    @property
    def error(self) -> str | None:
        value = self.payload.get("error")
        return str(value) if value else None

    @property
    def attempts(self) -> list[Mapping[str, Any]]:
        value = self.payload.get("attempts")
        if isinstance(value, list):
            return [item for item in value if isinstance(item, Mapping)]
        return []


def write_planning_log(
    logs_root: Path,
    *,
    mode: str,
    request: Any,
    prompt: str,
    system_prompt: str | None,
    attempts: list[dict[str, Any]],
    session_id: str | None = None,
    result: Any | None = None,
    error: Exception | str | None = None,
) -> Optional[Path]:
    """Persist one planner invocation under ``logs_root/planning``.

    Unwritable directories are skipped and ``None`` is returned.
    """
    target_root = logs_root / "planning"
    try:
        target_root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None

    entry: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "mode": mode,
        "request": json_safe(request),
        "context": {
            "system_prompt": system_prompt,
            "user_prompt": prompt,
        },
        "attempts": attempts,
    }
    if session_id:
        entry["session_id"] = session_id
    if result is not None:
        entry["result"] = json_safe(result)
    if error is not None:
        entry["error"] = str(error)

    parts = ["planning", _slug(mode, fallback="plan")]
    if session_id:
        parts.append(_slug(session_id))
    parts.append(datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ"))
    log_path = target_root / ("__".join(parts) + ".json")
    try:
        with log_path.open("w", encoding="utf-8") as handle:
            json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
    except OSError:
        return None
    return log_path


def load_planning_log(path: Path | str) -> PlanningLogEntry:
    """Load a structured planning log from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"Planning log {log_path} does not contain a JSON object.")
    mode = str(payload.get("mode") or "").strip()
    return PlanningLogEntry(path=log_path, mode=mode, payload=payload)


def json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        try:
            return json_safe(value.model_dump(mode="json", by_alias=True))
        except TypeError:
            pass
    if isinstance(value, Mapping):
        return {str(key): json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def _slug(value: str, *, fallback: str = "item", max_length: int = 60) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value).strip("-")
    slug = cleaned or fallback
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"
