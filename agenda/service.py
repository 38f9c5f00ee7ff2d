from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from agenda.ai_client import Interpreter, build_interpreter
from agenda.backups import BackupManager
from agenda.caldav_client import CalDAVRemoteCalendar
from agenda.conflicts import ConflictDetector, Scope, free_intervals
from agenda.errors import AgendaError, ValidationError
from agenda.event_store import EventStore
from agenda.intent import IntentResolver
from agenda.interchange import Importer, export_ics, export_json
from agenda.models import PRIORITIES, AppConfig, Event, SyncReport, serialize_datetime, utc_now
from agenda.operations import (
    MUTATING_OPERATIONS,
    Backup,
    Create,
    Delete,
    Filter,
    FreeText,
    Operation,
    Query,
    RawInput,
    Restore,
    Stats,
    Update,
)
from agenda.remote import RemoteCalendar
from agenda.state_store import StateStore
from agenda.sync_engine import SyncEngine, draft_from_event

logger = logging.getLogger(__name__)

STORE_FILENAME = "events.json"
HISTORY_FILENAME = "sync_history.db"
CONTEXT_EVENT_LIMIT = 20
CONVERSATION_CONTEXT_TURNS = 10
SUMMARY_RECENT_TURNS = 10
SUMMARY_PREVIEW_CHARS = 100
REPLY_EVENT_LIMIT = 5


def _event_brief(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "start": serialize_datetime(event.start),
        "end": serialize_datetime(event.end),
    }


def _reply_text(result: "OperationResult") -> str:
    if result.kind != "query" or not result.events:
        return result.message or result.kind
    listed = ", ".join(
        f"{event.title} ({serialize_datetime(event.start)})" for event in result.events[:REPLY_EVENT_LIMIT]
    )
    more = len(result.events) - REPLY_EVENT_LIMIT
    return f"{result.message} {listed}" + (f" and {more} more." if more > 0 else "")


@dataclass
class OperationResult:
    kind: str
    status: str = "ok"
    message: str = ""
    event: Event | None = None
    events: list[Event] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    stats: dict[str, Any] | None = None
    snapshot_id: str = ""
    future: Future | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "status": self.status, "message": self.message}
        if self.event is not None:
            payload["event"] = self.event.to_dict()
        if self.kind == "query":
            payload["events"] = [event.to_dict() for event in self.events]
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        if self.stats is not None:
            payload["stats"] = self.stats
        if self.snapshot_id:
            payload["snapshot_id"] = self.snapshot_id
        return payload


class ScheduleService:
    """Single mutation path over the event store, shared by every front end."""

    def __init__(
        self,
        config: AppConfig,
        *,
        store: EventStore,
        backups: BackupManager,
        resolver: IntentResolver,
        interpreter: Interpreter | None = None,
        remote: RemoteCalendar | None = None,
        history: StateStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.store = store
        self.backups = backups
        self.resolver = resolver
        self.interpreter = interpreter
        self.remote = remote
        self.history = history
        self.clock = clock
        self.detector = ConflictDetector(store, remote)
        self.importer = Importer(store, backups)
        self.sync_engine = (
            SyncEngine(store, remote, backups, config.sync, history=history, clock=clock)
            if remote is not None
            else None
        )
        self._mutation_lock = threading.RLock()
        self._queue_lock = threading.Lock()
        self._sync_active = False
        self._pending: deque[tuple[Operation, Future]] = deque()

    # Operations

    def handle(
        self,
        raw: RawInput,
        *,
        cancel_event: threading.Event | None = None,
    ) -> OperationResult:
        context: dict[str, Any] = {
            "events": [
                _event_brief(event)
                for event in self.store.query(Filter(upcoming=True, limit=CONTEXT_EVENT_LIMIT), now=self.clock())
            ]
        }
        if not isinstance(raw, FreeText) or self.history is None:
            operation = self.resolver.resolve(raw, cancel_event=cancel_event, context=context)
            return self.apply(operation)

        context["conversation"] = [
            {"role": turn["role"], "content": turn["content"]}
            for turn in self.history.recent_messages(CONVERSATION_CONTEXT_TURNS)
        ]
        self.history.record_message("user", raw.text)
        try:
            operation = self.resolver.resolve(raw, cancel_event=cancel_event, context=context)
            result = self.apply(operation)
        except AgendaError as exc:
            self.history.record_message("assistant", exc.message, exc.event_id)
            raise
        self.history.record_message("assistant", _reply_text(result), result.event.id if result.event else None)
        return result

    # Conversation

    def conversation_summary(self) -> dict[str, Any]:
        if self.history is None:
            return {"total": 0, "by_role": {}, "recent": []}
        counts = self.history.message_counts()
        recent = []
        for turn in self.history.recent_messages(SUMMARY_RECENT_TURNS):
            content = turn["content"]
            if len(content) > SUMMARY_PREVIEW_CHARS:
                content = content[: SUMMARY_PREVIEW_CHARS - 3] + "..."
            recent.append({"role": turn["role"], "content": content, "created_at": turn["created_at"]})
        return {"total": sum(counts.values()), "by_role": counts, "recent": recent}

    def conversation_log(self) -> str:
        turns = self.history.recent_messages() if self.history else []
        if not turns:
            return "No conversation history.\n"
        lines = [
            "=== Agenda conversation log ===",
            f"Generated: {serialize_datetime(self.clock())}",
            f"Messages: {len(turns)}",
            "",
        ]
        for index, turn in enumerate(turns, start=1):
            lines.append(f"[{index}] {turn['created_at']} {turn['role']}: {turn['content']}")
            lines.append("")
        return "\n".join(lines)

    def clear_conversation(self) -> int:
        return self.history.clear_conversation() if self.history else 0

    def apply(self, operation: Operation) -> OperationResult:
        if not isinstance(operation, MUTATING_OPERATIONS):
            return self._apply(operation)
        with self._queue_lock:
            if self._sync_active:
                future: Future = Future()
                self._pending.append((operation, future))
                logger.info("Queued %s until the running sync pass completes", operation.kind)
                return OperationResult(
                    kind=operation.kind,
                    status="queued",
                    message="A sync pass is running; the change will be applied when it completes.",
                    future=future,
                )
        with self._mutation_lock:
            return self._apply(operation)

    def _apply(self, operation: Operation) -> OperationResult:
        if isinstance(operation, Create):
            return self._create(operation)
        if isinstance(operation, Update):
            return self._update(operation)
        if isinstance(operation, Delete):
            event = self.store.delete(operation.event_id)
            logger.info("Deleted event %s", event.id)
            return OperationResult(kind=operation.kind, event=event, message=f"Deleted {event.title!r}.")
        if isinstance(operation, Query):
            events = list(self.store.query(operation.filter, now=self.clock()))
            return OperationResult(kind=operation.kind, events=events, message=f"{len(events)} event(s).")
        if isinstance(operation, Stats):
            return OperationResult(kind=operation.kind, stats=self.stats())
        if isinstance(operation, Backup):
            snapshot_id = self.backups.snapshot(operation.reason)
            return OperationResult(kind=operation.kind, snapshot_id=snapshot_id, message=f"Backup {snapshot_id} created.")
        if isinstance(operation, Restore):
            safety_id = self.backups.restore(operation.snapshot_id)
            return OperationResult(
                kind=operation.kind,
                snapshot_id=safety_id,
                message=f"Restored {operation.snapshot_id}; previous state saved as {safety_id}.",
            )
        raise ValidationError(f"Unsupported operation {type(operation).__name__}.", operation="apply")

    def _overlap_warnings(self, event: Event, exclude_id: str | None = None) -> list[dict[str, Any]]:
        overlaps = self.detector.find_overlaps(draft_from_event(event), Scope.LOCAL, exclude_id=exclude_id)
        return [_event_brief(item) for item in overlaps]

    def _create(self, operation: Create) -> OperationResult:
        draft = operation.draft
        candidate = Event(
            id="",
            title=draft.title,
            start=draft.start,
            end=draft.end,
            description=draft.description,
            location=draft.location,
            tags=frozenset(draft.tags),
            priority=draft.priority,
            attendees=list(draft.attendees),
        )
        warnings = self._overlap_warnings(candidate)
        event = self.store.put(candidate)
        logger.info("Created event %s (%s)", event.id, event.title)
        return OperationResult(kind=operation.kind, event=event, warnings=warnings, message=f"Created {event.title!r}.")

    def _update(self, operation: Update) -> OperationResult:
        current = self.store.require(operation.event_id, operation="update")
        changes = operation.patch.changes()
        if "tags" in changes:
            changes["tags"] = frozenset(changes["tags"])
        if "attendees" in changes:
            changes["attendees"] = list(changes["attendees"])
        updated = current.with_updates(**changes)
        if updated.start >= updated.end:
            raise ValidationError("start must be before end.", operation="update", event_id=current.id)
        warnings = self._overlap_warnings(updated, exclude_id=current.id)
        event = self.store.put(updated)
        logger.info("Updated event %s (%s)", event.id, ", ".join(sorted(changes)))
        return OperationResult(kind=operation.kind, event=event, warnings=warnings, message=f"Updated {event.title!r}.")

    # Read-side helpers

    def stats(self) -> dict[str, Any]:
        now = self.clock()
        events = self.store.all_events(include_deleted=True)
        active = [event for event in events if not event.deleted]
        by_day: Counter[str] = Counter()
        by_week: Counter[str] = Counter()
        by_tag: Counter[str] = Counter()
        by_priority: Counter[str] = Counter({priority: 0 for priority in PRIORITIES})
        for event in active:
            local_start = event.start.astimezone(self.store.tz)
            iso_year, iso_week, _ = local_start.isocalendar()
            by_day[local_start.date().isoformat()] += 1
            by_week[f"{iso_year}-W{iso_week:02d}"] += 1
            by_tag.update(event.tags)
            by_priority[event.priority] += 1
        return {
            "total": len(active),
            "upcoming": sum(1 for event in active if event.start >= now),
            "past": sum(1 for event in active if event.end <= now),
            "tombstoned": len(events) - len(active),
            "by_day": dict(sorted(by_day.items())),
            "by_week": dict(sorted(by_week.items())),
            "by_tag": dict(sorted(by_tag.items())),
            "by_priority": {priority: by_priority[priority] for priority in PRIORITIES},
        }

    def find_free(self, duration_minutes: int, horizon_days: int = 7) -> list[tuple[datetime, datetime]]:
        if duration_minutes <= 0:
            raise ValidationError("duration must be a positive number of minutes.", operation="find_free")
        if horizon_days <= 0:
            raise ValidationError("horizon must be a positive number of days.", operation="find_free")
        start = self.clock()
        end = start + timedelta(days=horizon_days)
        busy = [(event.start, event.end) for event in self.store.query(Filter(start=start, end=end), now=start)]
        return free_intervals(busy, start, end, timedelta(minutes=duration_minutes))

    # Maintenance

    def compact(self) -> dict[str, Any]:
        with self._mutation_lock:
            with self.backups.checkpoint("compact") as snapshot_id:
                purged = self.store.compact()
        return {"purged": purged, "snapshot_id": snapshot_id}

    def export(self, fmt: str = "json") -> str:
        if fmt == "json":
            return export_json(self.store)
        if fmt == "ics":
            return export_ics(self.store)
        raise ValidationError(f"Unsupported export format {fmt!r}.", operation="export")

    def import_data(self, payload: str | bytes, fmt: str = "json") -> dict[str, Any]:
        with self._mutation_lock:
            if fmt == "json":
                return self.importer.import_json(payload)
            if fmt == "ics":
                return self.importer.import_ics(payload)
        raise ValidationError(f"Unsupported import format {fmt!r}.", operation="import")

    # Sync

    def run_sync(self, trigger: str = "manual") -> SyncReport:
        if self.sync_engine is None:
            return SyncReport(
                status="skipped",
                stage="idle",
                message="Remote calendar is not configured.",
                trigger=trigger,
            )
        with self._queue_lock:
            if self._sync_active:
                return SyncReport(
                    status="skipped",
                    stage=self.sync_engine.stage.value,
                    message="A sync pass is already running.",
                    trigger=trigger,
                )
            self._sync_active = True
        try:
            with self._mutation_lock:
                report = self.sync_engine.run_once(trigger=trigger)
        finally:
            with self._queue_lock:
                self._sync_active = False
                pending = list(self._pending)
                self._pending.clear()
            self._drain(pending)
        return report

    def _drain(self, pending: list[tuple[Operation, Future]]) -> None:
        for operation, future in pending:
            try:
                result = self.apply(operation)
            except AgendaError as exc:
                logger.error("Queued %s failed: %s", operation.kind, exc.message)
                future.set_exception(exc)
            except Exception as exc:
                logger.exception("Queued %s crashed", operation.kind)
                future.set_exception(exc)
            else:
                future.set_result(result)

    def sync_history(self, limit: int = 20, status: str | None = None) -> list[dict[str, Any]]:
        return self.history.recent_sync_runs(limit=limit, status=status) if self.history else []

    def sync_run(self, run_id: int) -> dict[str, Any] | None:
        return self.history.get_sync_run(run_id) if self.history else None

    def audit_events(
        self,
        limit: int = 100,
        run_id: int | None = None,
        event_id: str | None = None,
    ) -> list[dict[str, Any]]:
        if self.history is None:
            return []
        return self.history.recent_audit_events(limit=limit, run_id=run_id, event_id=event_id)

    def test_ai(self) -> tuple[bool, str]:
        probe = getattr(self.interpreter, "test_connectivity", None)
        if probe is None:
            return True, "Mock interpreter in use."
        return probe()


def build_service(
    config: AppConfig,
    *,
    remote: RemoteCalendar | None = None,
    interpreter: Interpreter | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ScheduleService:
    data_dir = Path(config.storage.data_dir)
    timezone_name = config.sync.timezone
    store = EventStore(data_dir / STORE_FILENAME, timezone_name=timezone_name)
    backups = BackupManager(store, retention=config.storage.backup_retention, clock=clock)
    interpreter = interpreter or build_interpreter(config.ai, timezone_name)
    resolver = IntentResolver(interpreter, timezone=timezone_name, clock=clock, timeout_seconds=config.ai.timeout_seconds)
    if remote is None and config.caldav.base_url:
        remote = CalDAVRemoteCalendar(config.caldav, timeout_seconds=config.sync.request_timeout_seconds)
    return ScheduleService(
        config,
        store=store,
        backups=backups,
        resolver=resolver,
        interpreter=interpreter,
        remote=remote,
        history=StateStore(str(data_dir / HISTORY_FILENAME)),
        clock=clock,
    )
