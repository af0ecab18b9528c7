"""Durable storage layer for pilot sessions, steps, and action results."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Sequence

from .schema import (
    ActionResult,
    ActionStep,
    PilotSession,
    PilotStep,
    SessionStatus,
    StepMode,
    StepStatus,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/pilot.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    return json.dumps(default if data is None else data)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


class PilotStore:
    """SQLite-backed persistence for pilot sessions and their execution records."""

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "epoch-pilot" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists():
            if resolved.exists() and os.access(resolved, os.R_OK):
                try:
                    shutil.copy2(resolved, fallback)
                except OSError:
                    fallback.touch(exist_ok=True)
            else:
                fallback.touch(exist_ok=True)
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "PilotStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PilotStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))

        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "pilot.sqlite")

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS pilot_sessions (
                session_id TEXT PRIMARY KEY,
                uid TEXT NOT NULL,
                title TEXT NOT NULL,
                input TEXT NOT NULL,
                target_type TEXT,
                target_id TEXT,
                max_epoch INTEGER NOT NULL,
                current_epoch INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                progress TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_uid
                ON pilot_sessions(uid, created_at DESC);

            CREATE TABLE IF NOT EXISTS pilot_steps (
                step_id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                name TEXT NOT NULL,
                epoch INTEGER NOT NULL,
                mode TEXT NOT NULL,
                status TEXT NOT NULL,
                entity_id TEXT,
                entity_type TEXT NOT NULL,
                raw_output TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES pilot_sessions(session_id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_steps_session_epoch
                ON pilot_steps(session_id, epoch, mode);

            CREATE TABLE IF NOT EXISTS action_results (
                result_id TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                uid TEXT NOT NULL,
                title TEXT NOT NULL,
                pilot_step_id TEXT,
                pilot_session_id TEXT,
                skill_name TEXT NOT NULL,
                status TEXT NOT NULL,
                output_url TEXT,
                storage_key TEXT,
                errors TEXT NOT NULL,
                input TEXT NOT NULL,
                context TEXT NOT NULL,
                history TEXT NOT NULL,
                target_type TEXT,
                target_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(result_id, version)
            );
            CREATE INDEX IF NOT EXISTS idx_results_step
                ON action_results(pilot_step_id);

            CREATE TABLE IF NOT EXISTS action_steps (
                result_id TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                step_order INTEGER NOT NULL DEFAULT 0,
                name TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY(result_id, version, step_order)
            );
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # Session operations --------------------------------------------------------------
    def create_session(self, session: PilotSession) -> PilotSession:
        record = session.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO pilot_sessions (
                    session_id, uid, title, input, target_type, target_id, max_epoch,
                    current_epoch, status, progress, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.session_id,
                    record.uid,
                    record.title,
                    _dump_json(record.input, default={}),
                    record.target_type,
                    record.target_id,
                    record.max_epoch,
                    record.current_epoch,
                    record.status.value,
                    record.progress,
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def get_session(self, session_id: str, *, uid: Optional[str] = None) -> Optional[PilotSession]:
        query = "SELECT * FROM pilot_sessions WHERE session_id = ?"
        params: List[Any] = [session_id]
        if uid is not None:
            query += " AND uid = ?"
            params.append(uid)
        row = self._conn.execute(query, params).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def list_sessions(
        self,
        uid: str,
        *,
        target_id: Optional[str] = None,
        target_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> List[PilotSession]:
        query = "SELECT * FROM pilot_sessions WHERE uid = ?"
        params: List[Any] = [uid]
        if target_id:
            query += " AND target_id = ?"
            params.append(target_id)
        if target_type:
            query += " AND target_type = ?"
            params.append(target_type)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        cursor = self._conn.execute(query, params)
        return [self._row_to_session(row) for row in cursor.fetchall()]

    def update_session(
        self,
        session_id: str,
        *,
        status: Optional[SessionStatus] = None,
        current_epoch: Optional[int] = None,
        max_epoch: Optional[int] = None,
        input: Optional[Mapping[str, Any]] = None,
        progress: Optional[str] = None,
    ) -> None:
        assignments: List[str] = []
        params: List[Any] = []
        if status is not None:
            assignments.append("status = ?")
            params.append(SessionStatus(status).value)
        if current_epoch is not None:
            assignments.append("current_epoch = ?")
            params.append(current_epoch)
        if max_epoch is not None:
            assignments.append("max_epoch = ?")
            params.append(max_epoch)
        if input is not None:
            assignments.append("input = ?")
            params.append(_dump_json(dict(input), default={}))
        if progress is not None:
            assignments.append("progress = ?")
            params.append(progress)
        if not assignments:
            return
        assignments.append("updated_at = ?")
        params.append(_as_iso(utc_now()))
        params.append(session_id)
        with self._transaction():
            cursor = self._conn.execute(
                f"UPDATE pilot_sessions SET {', '.join(assignments)} WHERE session_id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Pilot session {session_id} not found")

    def update_session_progress(self, session_id: str, progress: str) -> None:
        self.update_session(session_id, progress=progress)

    # Step operations -----------------------------------------------------------------
    def create_step(self, step: PilotStep) -> PilotStep:
        record = step.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO pilot_steps (
                    step_id, session_id, name, epoch, mode, status, entity_id,
                    entity_type, raw_output, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.step_id,
                    record.session_id,
                    record.name,
                    record.epoch,
                    record.mode.value,
                    record.status.value,
                    record.entity_id,
                    record.entity_type,
                    _dump_json(record.raw_output, default={}),
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def get_step(self, step_id: str) -> Optional[PilotStep]:
        row = self._conn.execute("SELECT * FROM pilot_steps WHERE step_id = ?", (step_id,)).fetchone()
        if not row:
            return None
        return self._row_to_step(row)

    def list_steps(
        self,
        session_id: str,
        *,
        epoch: Optional[int] = None,
        mode: Optional[StepMode] = None,
    ) -> List[PilotStep]:
        query = "SELECT * FROM pilot_steps WHERE session_id = ?"
        params: List[Any] = [session_id]
        if epoch is not None:
            query += " AND epoch = ?"
            params.append(epoch)
        if mode is not None:
            query += " AND mode = ?"
            params.append(StepMode(mode).value)
        query += " ORDER BY epoch ASC, created_at ASC, rowid ASC"
        cursor = self._conn.execute(query, params)
        return [self._row_to_step(row) for row in cursor.fetchall()]

    def update_step_status(self, step_id: str, status: StepStatus) -> None:
        with self._transaction():
            self._conn.execute(
                "UPDATE pilot_steps SET status = ?, updated_at = ? WHERE step_id = ?",
                (StepStatus(status).value, _as_iso(utc_now()), step_id),
            )

    # Action result operations --------------------------------------------------------
    def save_result(self, result: ActionResult) -> ActionResult:
        record = result.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO action_results (
                    result_id, version, uid, title, pilot_step_id, pilot_session_id,
                    skill_name, status, output_url, storage_key, errors, input, context,
                    history, target_type, target_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(result_id, version) DO UPDATE SET
                    title = excluded.title,
                    status = excluded.status,
                    output_url = excluded.output_url,
                    storage_key = excluded.storage_key,
                    errors = excluded.errors,
                    input = excluded.input,
                    context = excluded.context,
                    history = excluded.history,
                    updated_at = excluded.updated_at
                """,
                (
                    record.result_id,
                    record.version,
                    record.uid,
                    record.title,
                    record.pilot_step_id,
                    record.pilot_session_id,
                    record.skill_name,
                    record.status.value,
                    record.output_url,
                    record.storage_key,
                    _dump_json(record.errors, default=[]),
                    _dump_json(record.input, default={}),
                    _dump_json(record.context, default={}),
                    _dump_json(record.history, default=[]),
                    record.target_type,
                    record.target_id,
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def get_result(self, result_id: str, *, version: Optional[int] = None) -> Optional[ActionResult]:
        if version is None:
            row = self._conn.execute(
                "SELECT * FROM action_results WHERE result_id = ? ORDER BY version DESC LIMIT 1",
                (result_id,),
            ).fetchone()
        else:
            row = self._conn.execute(
                "SELECT * FROM action_results WHERE result_id = ? AND version = ?",
                (result_id, version),
            ).fetchone()
        if not row:
            return None
        return self._row_to_result(row)

    def list_results_for_steps(self, step_ids: Iterable[str]) -> List[ActionResult]:
        """Return every result version attached to the given pilot steps."""
        ids = [step_id for step_id in step_ids if step_id]
        if not ids:
            return []
        cursor = self._conn.execute(
            f"SELECT * FROM action_results WHERE pilot_step_id IN ({_placeholders(ids)}) "
            "ORDER BY version DESC",
            ids,
        )
        return [self._row_to_result(row) for row in cursor.fetchall()]

    def list_results(self, result_ids: Iterable[str], *, version: Optional[int] = None) -> List[ActionResult]:
        ids = [result_id for result_id in result_ids if result_id]
        if not ids:
            return []
        query = f"SELECT * FROM action_results WHERE result_id IN ({_placeholders(ids)})"
        params: List[Any] = list(ids)
        if version is not None:
            query += " AND version = ?"
            params.append(version)
        query += " ORDER BY result_id ASC, version ASC"
        cursor = self._conn.execute(query, params)
        return [self._row_to_result(row) for row in cursor.fetchall()]

    # Action step operations ----------------------------------------------------------
    def save_action_step(self, step: ActionStep) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO action_steps (result_id, version, step_order, name, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(result_id, version, step_order) DO UPDATE SET
                    name = excluded.name,
                    content = excluded.content
                """,
                (
                    step.result_id,
                    step.version,
                    step.order,
                    step.name,
                    step.content,
                    _as_iso(step.created_at),
                ),
            )

    def list_action_steps(self, result_ids: Iterable[str], *, version: int = 0) -> List[ActionStep]:
        ids = [result_id for result_id in result_ids if result_id]
        if not ids:
            return []
        cursor = self._conn.execute(
            f"SELECT * FROM action_steps WHERE result_id IN ({_placeholders(ids)}) AND version = ? "
            "ORDER BY result_id ASC, step_order ASC",
            [*ids, version],
        )
        return [
            ActionStep(
                result_id=row["result_id"],
                version=row["version"],
                order=row["step_order"],
                name=row["name"],
                content=row["content"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    # Row helpers ---------------------------------------------------------------------
    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> PilotSession:
        return PilotSession(
            session_id=row["session_id"],
            uid=row["uid"],
            title=row["title"],
            input=_load_json(row["input"], default={}),
            target_type=row["target_type"],
            target_id=row["target_id"],
            max_epoch=row["max_epoch"],
            current_epoch=row["current_epoch"],
            status=row["status"],
            progress=row["progress"] or "",
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> PilotStep:
        return PilotStep(
            step_id=row["step_id"],
            session_id=row["session_id"],
            name=row["name"],
            epoch=row["epoch"],
            mode=row["mode"],
            status=row["status"],
            entity_id=row["entity_id"],
            entity_type=row["entity_type"],
            raw_output=_load_json(row["raw_output"], default={}),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_result(row: sqlite3.Row) -> ActionResult:
        return ActionResult(
            result_id=row["result_id"],
            version=row["version"],
            uid=row["uid"],
            title=row["title"],
            pilot_step_id=row["pilot_step_id"],
            pilot_session_id=row["pilot_session_id"],
            skill_name=row["skill_name"],
            status=row["status"],
            output_url=row["output_url"],
            storage_key=row["storage_key"],
            errors=_load_json(row["errors"], default=[]),
            input=_load_json(row["input"], default={}),
            context=_load_json(row["context"], default={}),
            history=_load_json(row["history"], default=[]),
            target_type=row["target_type"],
            target_id=row["target_id"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )


__all__ = ["DEFAULT_DB_PATH", "PilotStore"]
