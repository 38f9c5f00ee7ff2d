from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from agenda.models import SyncReport

logger = logging.getLogger(__name__)

DEFAULT_MAX_RUNS = 500
DEFAULT_MAX_MESSAGES = 1000
MESSAGE_ROLES = ("user", "assistant", "system")

RUN_COLUMNS = (
    "id",
    "run_at",
    "trigger",
    "status",
    "stage",
    "message",
    "duration_ms",
    "planned",
    "changes_applied",
    "conflicts",
    "stale",
    "snapshot_id",
    "actions_json",
    "errors_json",
)
AUDIT_COLUMNS = ("id", "run_id", "created_at", "event_id", "remote_id", "action", "details_json")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_json_column(item: dict[str, Any], column: str, target: str, empty: Any) -> dict[str, Any]:
    raw = item.pop(column, None)
    item[target] = json.loads(raw) if raw else empty
    return item


class StateStore:
    """SQLite journal of sync passes and the actions each pass applied.

    Runs are inserted as ``running`` when a pass starts and completed from the
    pass's ``SyncReport``, so an interrupted process leaves a visible row behind.
    Only the newest ``max_runs`` passes (and their audit rows) are kept.
    The free-text conversation log lives here as well, capped at ``max_messages``.
    """

    def __init__(
        self,
        db_path: str,
        max_runs: int = DEFAULT_MAX_RUNS,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_runs = max(1, max_runs)
        self.max_messages = max(1, max_messages)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'running',
            stage TEXT NOT NULL DEFAULT 'idle',
            message TEXT,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            planned INTEGER NOT NULL DEFAULT 0,
            changes_applied INTEGER NOT NULL DEFAULT 0,
            conflicts INTEGER NOT NULL DEFAULT 0,
            stale INTEGER NOT NULL DEFAULT 0,
            snapshot_id TEXT NOT NULL DEFAULT '',
            actions_json TEXT NOT NULL DEFAULT '{}',
            errors_json TEXT NOT NULL DEFAULT '[]'
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            event_id TEXT NOT NULL,
            remote_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS audit_events_run ON audit_events(run_id);

        CREATE TABLE IF NOT EXISTS conversation_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            event_id TEXT
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Runs

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO sync_runs(run_at, trigger, message) VALUES (?, ?, ?)",
                    (_utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(self, run_id: int, report: SyncReport) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, stage = ?, message = ?, duration_ms = ?, planned = ?,
                        changes_applied = ?, conflicts = ?, stale = ?, snapshot_id = ?,
                        actions_json = ?, errors_json = ?
                    WHERE id = ?
                    """,
                    (
                        report.status,
                        report.stage,
                        report.message,
                        int(report.duration_ms),
                        int(report.planned),
                        int(report.changes_applied),
                        int(report.conflicts),
                        int(report.stale),
                        report.snapshot_id,
                        json.dumps(report.actions, sort_keys=True),
                        json.dumps(report.errors, ensure_ascii=False),
                        int(run_id),
                    ),
                )
                conn.commit()
        self.prune()

    def prune(self) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id FROM sync_runs ORDER BY id DESC LIMIT 1 OFFSET ?",
                    (self.max_runs - 1,),
                ).fetchone()
                if row is None:
                    return 0
                oldest_kept = int(row["id"])
                removed = conn.execute("DELETE FROM sync_runs WHERE id < ?", (oldest_kept,)).rowcount
                conn.execute("DELETE FROM audit_events WHERE run_id < ?", (oldest_kept,))
                conn.commit()
        if removed:
            logger.debug("Pruned %d sync runs older than run %d", removed, oldest_kept)
        return removed

    def _run_rows(self, where: str, params: tuple[Any, ...], limit: int) -> list[dict[str, Any]]:
        sql = f"SELECT {', '.join(RUN_COLUMNS)} FROM sync_runs {where} ORDER BY id DESC LIMIT ?"  # nosec B608
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, (*params, max(1, limit))).fetchall()
        output = []
        for row in rows:
            item = _decode_json_column(dict(row), "actions_json", "actions", {})
            output.append(_decode_json_column(item, "errors_json", "errors", []))
        return output

    def recent_sync_runs(self, limit: int = 20, status: str | None = None) -> list[dict[str, Any]]:
        if status:
            return self._run_rows("WHERE status = ?", (status,), limit)
        return self._run_rows("", (), limit)

    def get_sync_run(self, run_id: int) -> dict[str, Any] | None:
        rows = self._run_rows("WHERE id = ?", (int(run_id),), 1)
        return rows[0] if rows else None

    # Audit journal

    def record_audit_event(
        self,
        *,
        event_id: str,
        remote_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, event_id, remote_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), event_id, remote_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(
        self,
        limit: int = 100,
        run_id: int | None = None,
        event_id: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(int(run_id))
        if event_id:
            clauses.append("event_id = ?")
            params.append(event_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {', '.join(AUDIT_COLUMNS)} FROM audit_events {where} ORDER BY id DESC LIMIT ?"  # nosec B608
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, (*params, max(1, limit))).fetchall()
        return [_decode_json_column(dict(row), "details_json", "details", {}) for row in rows]

    # Conversation

    def record_message(self, role: str, content: str, event_id: str | None = None) -> int:
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unknown conversation role {role!r}.")
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO conversation_messages(created_at, role, content, event_id) VALUES (?, ?, ?, ?)",
                    (_utc_now(), role, content, event_id),
                )
                message_id = int(cursor.lastrowid)
                conn.execute(
                    "DELETE FROM conversation_messages WHERE id <= ?",
                    (message_id - self.max_messages,),
                )
                conn.commit()
        return message_id

    def recent_messages(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Conversation turns, oldest first; ``limit`` keeps only the newest ones."""
        sql = "SELECT id, created_at, role, content, event_id FROM conversation_messages ORDER BY id DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (max(1, limit),)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [dict(row) for row in reversed(rows)]

    def message_counts(self) -> dict[str, int]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT role, COUNT(*) AS total FROM conversation_messages GROUP BY role"
                ).fetchall()
        counts = {role: 0 for role in MESSAGE_ROLES}
        counts.update({row["role"]: int(row["total"]) for row in rows})
        return counts

    def clear_conversation(self) -> int:
        with self._lock:
            with self._connect() as conn:
                removed = conn.execute("DELETE FROM conversation_messages").rowcount
                conn.commit()
        logger.info("Cleared %d conversation messages", removed)
        return removed
