from __future__ import annotations

import enum
import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, TypeVar

from agenda.backups import BackupManager
from agenda.conflicts import ConflictDetector, intervals_overlap
from agenda.errors import (
    AgendaError,
    RemoteError,
    RemoteNotFoundError,
    StaleRemoteError,
    StaleRevisionError,
    SyncError,
    TransientRemoteError,
)
from agenda.event_store import EventStore, StoreTransaction
from agenda.models import (
    EVENT_STATUS_ACTIVE,
    EVENT_STATUS_TOMBSTONED,
    Event,
    RemoteRef,
    SyncConfig,
    SyncReport,
    SyncState,
    serialize_datetime,
    sync_window,
    utc_now,
)
from agenda.operations import EventDraft
from agenda.remote import RemoteCalendar, RemoteEvent
from agenda.state_store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

PULL_CHUNK_DAYS = 30
MAX_PULL_WORKERS = 4
UNTITLED = "(untitled)"


class SyncStage(str, enum.Enum):
    IDLE = "idle"
    PULLING = "pulling"
    DIFFING = "diffing"
    MERGING = "merging"
    PUSHING = "pushing"
    FAILED = "failed"


LOCAL_ACTIONS = ("pull_create", "pull_update", "link", "local_delete", "purge")
PUSH_ACTIONS = ("push_create", "push_update", "push_delete")


@dataclass(frozen=True)
class SyncAction:
    kind: str
    event_id: str = ""
    remote: RemoteEvent | None = None
    conflict: bool = False

    @property
    def remote_id(self) -> str:
        return self.remote.remote_id if self.remote else ""


def draft_from_event(event: Event) -> EventDraft:
    return EventDraft(
        title=event.title,
        start=event.start,
        end=event.end,
        description=event.description,
        location=event.location,
        tags=frozenset(event.tags),
        priority=event.priority,
        attendees=tuple(event.attendees),
    )


def _remote_is_valid(remote: RemoteEvent) -> bool:
    return remote.start < remote.end


def _apply_remote(event: Event, remote: RemoteEvent) -> Event:
    return event.with_updates(
        title=remote.title or UNTITLED,
        start=remote.start,
        end=remote.end,
        description=remote.description,
        location=remote.location,
        tags=frozenset(remote.tags),
        remote_ref=remote.ref,
        status=EVENT_STATUS_ACTIVE,
    )


def _synced_state(event: Event, ref: RemoteRef, now: datetime) -> SyncState:
    return SyncState(
        event_id=event.id,
        remote_id=ref.remote_id,
        remote_etag=ref.etag,
        last_synced_revision=serialize_datetime(event.updated_at) or "",
        synced_at=serialize_datetime(now) or "",
        dirty=False,
    )


class _PartialPush(Exception):
    def __init__(self, applied: int, cause: Exception) -> None:
        super().__init__(str(cause))
        self.applied = applied
        self.cause = cause


class SyncEngine:
    def __init__(
        self,
        store: EventStore,
        remote: RemoteCalendar,
        backups: BackupManager,
        config: SyncConfig,
        history: StateStore | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.remote = remote
        self.backups = backups
        self.config = config
        self.history = history
        self.clock = clock
        self.sleep = sleep
        self.stage = SyncStage.IDLE
        self._run_lock = threading.Lock()

    # Remote calls

    def _with_retry(self, label: str, call: Callable[[], T]) -> T:
        attempts = max(1, self.config.max_attempts)
        for attempt in range(attempts):
            try:
                return call()
            except TransientRemoteError as exc:
                if attempt < attempts - 1:
                    delay = self.config.backoff_seconds * (2**attempt)
                    logger.warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                        label,
                        attempt + 1,
                        attempts,
                        exc,
                        delay,
                    )
                    self.sleep(delay)
                else:
                    logger.error("All %d attempts of %s failed. Last error: %s", attempts, label, exc)
                    raise
        raise AssertionError("unreachable")

    def pull(self, window_start: datetime, window_end: datetime) -> list[RemoteEvent]:
        chunks: list[tuple[datetime, datetime]] = []
        cursor = window_start
        while cursor < window_end:
            chunk_end = min(cursor + timedelta(days=PULL_CHUNK_DAYS), window_end)
            chunks.append((cursor, chunk_end))
            cursor = chunk_end
        if len(chunks) <= 1:
            pages = [self._with_retry("list_events", lambda: self.remote.list_events(window_start, window_end))]
        else:
            with ThreadPoolExecutor(max_workers=min(MAX_PULL_WORKERS, len(chunks))) as pool:
                futures = [
                    pool.submit(
                        self._with_retry,
                        "list_events",
                        lambda start=start, end=end: self.remote.list_events(start, end),
                    )
                    for start, end in chunks
                ]
                pages = [future.result() for future in futures]
        by_id: dict[str, RemoteEvent] = {}
        for page in pages:
            for remote in page:
                by_id[remote.remote_id] = remote
        return sorted(by_id.values(), key=lambda r: (r.start, r.remote_id))

    # Diff

    def diff(
        self,
        remote_events: list[RemoteEvent],
        window: tuple[datetime, datetime],
    ) -> list[SyncAction]:
        remote_by_id = {remote.remote_id: remote for remote in remote_events}
        states = {state.event_id: state for state in self.store.sync_states()}
        state_by_remote = {state.remote_id: state for state in states.values()}
        claimed: set[str] = set(state_by_remote)
        actions: list[SyncAction] = []

        for event in self.store.all_events(include_deleted=True):
            state = states.get(event.id)
            if state is None:
                candidate = None
                if event.remote_ref and event.remote_ref.remote_id not in claimed:
                    candidate = remote_by_id.get(event.remote_ref.remote_id)
                if candidate is None:
                    candidate = ConflictDetector.find_duplicate(
                        event, [r for r in remote_events if r.remote_id not in claimed]
                    )
                if candidate is not None:
                    claimed.add(candidate.remote_id)
                    # A tombstone that was never linked still owns its remote copy.
                    kind = "push_delete" if event.deleted else "link"
                    actions.append(SyncAction(kind, event.id, candidate))
                elif not event.deleted:
                    actions.append(SyncAction("push_create", event.id))
                continue

            remote = remote_by_id.get(state.remote_id)
            if remote is None:
                in_window = intervals_overlap(event.start, event.end, window[0], window[1])
                if event.deleted:
                    actions.append(SyncAction("purge" if in_window else "push_delete", event.id))
                elif in_window:
                    actions.append(SyncAction("local_delete", event.id))
                continue

            local_changed = state.dirty or serialize_datetime(event.updated_at) != state.last_synced_revision
            remote_changed = remote.etag != state.remote_etag
            if remote_changed and not _remote_is_valid(remote):
                logger.warning("Ignoring remote event %s with start >= end", remote.remote_id)
                remote_changed = False
            if event.deleted:
                if remote_changed:
                    # Remote edits win over a local delete.
                    actions.append(SyncAction("pull_update", event.id, remote, conflict=True))
                else:
                    actions.append(SyncAction("push_delete", event.id, remote))
            elif local_changed and remote_changed:
                actions.append(SyncAction("pull_update", event.id, remote, conflict=True))
            elif local_changed:
                actions.append(SyncAction("push_update", event.id, remote))
            elif remote_changed:
                actions.append(SyncAction("pull_update", event.id, remote))

        for remote in remote_events:
            if remote.remote_id in claimed:
                continue
            if not _remote_is_valid(remote):
                logger.warning("Skipping remote event %s with start >= end", remote.remote_id)
                continue
            actions.append(SyncAction("pull_create", "", remote))
        return actions

    # Merge

    def _apply_local(self, tx: StoreTransaction, action: SyncAction, now: datetime) -> None:
        if action.kind == "pull_create" and action.remote is not None:
            created = tx.put(_apply_remote(Event(id="", title="", start=now, end=now), action.remote))
            tx.set_sync_state(_synced_state(created, action.remote.ref, now))
        elif action.kind == "pull_update" and action.remote is not None:
            current = tx.get(action.event_id)
            if current is None:
                return
            updated = tx.put(_apply_remote(current, action.remote))
            tx.set_sync_state(_synced_state(updated, action.remote.ref, now))
        elif action.kind == "link" and action.remote is not None:
            tx.attach_remote(action.event_id, action.remote.ref)
            linked = tx.get(action.event_id)
            if linked is not None:
                tx.set_sync_state(_synced_state(linked, action.remote.ref, now))
        elif action.kind == "local_delete":
            current = tx.get(action.event_id)
            if current is None:
                return
            # Remote deletion is confirmed, so the tombstone no longer needs its link.
            tx.put(current.with_updates(status=EVENT_STATUS_TOMBSTONED, remote_ref=None))
            tx.drop_sync_state(action.event_id)
        elif action.kind == "purge":
            tx.purge(action.event_id)

    def merge(self, actions: list[SyncAction], run_id: int | None = None) -> int:
        local = [action for action in actions if action.kind in LOCAL_ACTIONS]
        if not local:
            return 0
        now = self.clock()
        with self.store.transaction() as tx:
            for action in local:
                self._apply_local(tx, action, now)
        for action in local:
            self._audit(run_id, action, action.kind)
        return len(local)

    # Push

    def _push_one(self, action: SyncAction, now: datetime) -> str:
        event = self.store.get(action.event_id, include_deleted=True)
        state = self.store.get_sync_state(action.event_id)
        if action.kind == "push_create":
            if event is None or event.deleted:
                return "skipped"
            ref = self._with_retry("create_event", lambda: self.remote.create_event(draft_from_event(event)))
            with self.store.transaction() as tx:
                tx.attach_remote(event.id, ref)
                tx.set_sync_state(_synced_state(event, ref, now))
            return "applied"
        if action.kind == "push_update":
            if event is None or state is None:
                return "skipped"
            current_ref = RemoteRef(remote_id=state.remote_id, etag=state.remote_etag)
            ref = self._with_retry(
                "update_event",
                lambda: self.remote.update_event(current_ref, draft_from_event(event), state.remote_etag),
            )
            with self.store.transaction() as tx:
                tx.attach_remote(event.id, ref)
                tx.set_sync_state(_synced_state(event, ref, now))
            return "applied"
        if action.kind == "push_delete":
            ref = action.remote.ref if action.remote is not None else None
            if state is not None:
                ref = RemoteRef(remote_id=state.remote_id, etag=state.remote_etag)
            if ref is not None:
                try:
                    self._with_retry("delete_event", lambda: self.remote.delete_event(ref))
                except RemoteNotFoundError:
                    logger.info("Remote event %s already deleted", ref.remote_id)
            with self.store.transaction() as tx:
                tx.purge(action.event_id)
            return "applied"
        return "skipped"

    def push(
        self, actions: list[SyncAction], run_id: int | None = None
    ) -> tuple[int, list[StaleRemoteError]]:
        applied = 0
        stale: list[StaleRemoteError] = []
        now = self.clock()
        for action in actions:
            if action.kind not in PUSH_ACTIONS:
                continue
            try:
                outcome = self._push_one(action, now)
            except StaleRevisionError as exc:
                stale.append(
                    StaleRemoteError(
                        str(exc),
                        stage=SyncStage.PUSHING.value,
                        operation=action.kind,
                        event_id=action.event_id,
                    )
                )
                logger.warning("Stale remote revision for event %s: %s", action.event_id, exc)
                self._audit(run_id, action, "stale_remote", {"expected": exc.expected, "actual": exc.actual})
                continue
            except (RemoteError, AgendaError) as exc:
                raise _PartialPush(applied, exc) from exc
            if outcome == "applied":
                applied += 1
                self._audit(run_id, action, action.kind)
        return applied, stale

    def _audit(self, run_id: int | None, action: SyncAction, name: str, details: dict | None = None) -> None:
        if self.history is None:
            return
        state = self.store.get_sync_state(action.event_id) if action.event_id else None
        remote_id = action.remote_id or (state.remote_id if state else "")
        self.history.record_audit_event(
            run_id=run_id,
            event_id=action.event_id,
            remote_id=remote_id,
            action=name,
            details={"conflict": action.conflict, **(details or {})},
        )

    # Pass

    def run_once(self, trigger: str = "manual") -> SyncReport:
        if not self._run_lock.acquire(blocking=False):
            return SyncReport(
                status="skipped",
                stage=self.stage.value,
                message="A sync pass is already running.",
                trigger=trigger,
            )
        try:
            return self._run(trigger)
        finally:
            self._run_lock.release()

    def _run(self, trigger: str) -> SyncReport:
        started = time.monotonic()
        run_id = self.history.start_sync_run(trigger=trigger) if self.history else None
        report = SyncReport(status="running", stage=SyncStage.IDLE.value, message="", trigger=trigger)
        counts: Counter[str] = Counter()
        applied = 0
        try:
            with self.backups.checkpoint(f"sync:{trigger}") as snapshot_id:
                report.snapshot_id = snapshot_id
                self.stage = SyncStage.PULLING
                window = sync_window(self.clock(), self.config.lookback_days, self.config.lookahead_days)
                remote_events = self.pull(*window)

                self.stage = SyncStage.DIFFING
                actions = self.diff(remote_events, window)
                counts.update(action.kind for action in actions)
                report.planned = len(actions)
                report.conflicts = sum(1 for action in actions if action.conflict)

                self.stage = SyncStage.MERGING
                if report.conflicts:
                    report.snapshot_id = self.backups.snapshot("pre-merge conflict")
                applied += self.merge(actions, run_id)

                self.stage = SyncStage.PUSHING
                try:
                    pushed, stale = self.push(actions, run_id)
                except _PartialPush as exc:
                    applied += exc.applied
                    raise exc.cause
                applied += pushed
                report.stale = len(stale)
                report.errors = [error.to_dict() for error in stale]
            report.status = "success"
            report.stage = SyncStage.IDLE.value
            report.message = f"Applied {applied} of {report.planned} planned actions."
            self.stage = SyncStage.IDLE
        except (RemoteError, AgendaError, OSError) as exc:
            self._fail(report, exc)
            logger.error(report.message)
        except Exception as exc:
            self._fail(report, exc)
            logger.exception("Sync crashed while %s", report.stage)
            self._finish(run_id, report, counts, applied, started)
            raise
        self._finish(run_id, report, counts, applied, started)
        return report

    def _fail(self, report: SyncReport, exc: Exception) -> None:
        failed_stage = self.stage.value
        self.stage = SyncStage.FAILED
        report.status = "failed"
        report.stage = failed_stage
        report.message = f"Sync failed while {failed_stage}: {type(exc).__name__}: {exc}"

    def _finish(
        self, run_id: int | None, report: SyncReport, counts: Counter[str], applied: int, started: float
    ) -> None:
        report.changes_applied = applied
        report.actions = dict(counts)
        report.duration_ms = int((time.monotonic() - started) * 1000)
        if self.history is not None and run_id is not None:
            self.history.finish_sync_run(run_id, report)
        logger.info(
            "Sync %s (%s): %d planned, %d applied, %d conflicts, %d stale",
            report.status,
            report.trigger,
            report.planned,
            report.changes_applied,
            report.conflicts,
            report.stale,
        )


def failure_error(report: SyncReport) -> SyncError:
    return SyncError(report.message, stage=report.stage, applied=report.changes_applied, planned=report.planned)
