from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from pathlib import Path
from typing import Any, Iterator
from zoneinfo import ZoneInfo

from agenda.errors import NotFoundError, StorageError, ValidationError
from agenda.models import (
    EVENT_STATUS_ACTIVE,
    EVENT_STATUS_TOMBSTONED,
    Event,
    RemoteRef,
    Snapshot,
    SyncState,
    new_event_id,
    next_revision,
    serialize_datetime,
    utc_now,
)
from agenda.operations import Filter

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1
KNOWN_KEYS = {"version", "events", "sync_states", "snapshots", "snapshot_seq"}


def validate_event(event: Event) -> None:
    if not event.title.strip():
        raise ValidationError("Event title must not be empty.", operation="put", event_id=event.id or None)
    if event.start.tzinfo is None or event.end.tzinfo is None:
        raise ValidationError("Event start and end must be timezone-aware.", operation="put", event_id=event.id or None)
    if not event.deleted and event.start >= event.end:
        raise ValidationError(
            f"Event start {serialize_datetime(event.start)} must be before end {serialize_datetime(event.end)}.",
            operation="put",
            event_id=event.id or None,
        )


@dataclass
class _StoreState:
    events: dict[str, Event] = field(default_factory=dict)
    sync_states: dict[str, SyncState] = field(default_factory=dict)
    snapshots: list[Snapshot] = field(default_factory=list)
    snapshot_seq: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "_StoreState":
        # Events and sync states are replaced on write, never mutated in place.
        return _StoreState(
            events=dict(self.events),
            sync_states=dict(self.sync_states),
            snapshots=list(self.snapshots),
            snapshot_seq=self.snapshot_seq,
            extra=dict(self.extra),
        )

    def to_document(self) -> dict[str, Any]:
        document = dict(self.extra)
        document.update(
            {
                "version": DOCUMENT_VERSION,
                "events": [event.to_dict() for event in sorted(self.events.values(), key=lambda e: e.id)],
                "sync_states": [state.to_dict() for state in self.sync_states.values()],
                "snapshots": [snapshot.to_dict() for snapshot in self.snapshots],
                "snapshot_seq": self.snapshot_seq,
            }
        )
        return document

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "_StoreState":
        events = {}
        for item in document.get("events", []) or []:
            event = Event.from_dict(item)
            events[event.id] = event
        sync_states = {}
        for item in document.get("sync_states", []) or []:
            state = SyncState.from_dict(item)
            if state.event_id in events:
                sync_states[state.event_id] = state
        snapshots = [Snapshot.from_dict(item) for item in document.get("snapshots", []) or []]
        return cls(
            events=events,
            sync_states=sync_states,
            snapshots=sorted(snapshots, key=lambda s: s.snapshot_id),
            snapshot_seq=int(document.get("snapshot_seq", len(snapshots)) or 0),
            extra={k: v for k, v in document.items() if k not in KNOWN_KEYS},
        )


class StoreTransaction:
    """Mutations staged on a private copy of the store, committed as one write."""

    def __init__(self, state: _StoreState) -> None:
        self._state = state
        self.changes = 0

    def get(self, event_id: str) -> Event | None:
        event = self._state.events.get(event_id)
        return event.clone() if event else None

    def get_sync_state(self, event_id: str) -> SyncState | None:
        return self._state.sync_states.get(event_id)

    def put(self, event: Event, touch: bool = True) -> Event:
        stored = event.clone()
        if not stored.id:
            stored.id = new_event_id()
        validate_event(stored)
        previous = self._state.events.get(stored.id)
        if touch:
            stored.updated_at = next_revision(
                max(previous.updated_at, stored.updated_at) if previous else None
            )
        if previous is not None:
            stored.created_at = previous.created_at
        elif touch:
            stored.created_at = stored.updated_at
        self._state.events[stored.id] = stored
        sync_state = self._state.sync_states.get(stored.id)
        if touch and sync_state is not None and not sync_state.dirty:
            self._state.sync_states[stored.id] = SyncState(**{**sync_state.to_dict(), "dirty": True})
        self.changes += 1
        return stored.clone()

    def tombstone(self, event_id: str) -> Event:
        event = self._state.events.get(event_id)
        if event is None or event.deleted:
            raise NotFoundError(f"Event {event_id} not found.", operation="delete", event_id=event_id)
        return self.put(event.with_updates(status=EVENT_STATUS_TOMBSTONED))

    def purge(self, event_id: str) -> None:
        self._state.events.pop(event_id, None)
        self._state.sync_states.pop(event_id, None)
        self.changes += 1

    def attach_remote(self, event_id: str, ref: RemoteRef | None) -> None:
        event = self._state.events.get(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found.", operation="sync", event_id=event_id)
        self._state.events[event_id] = event.with_updates(remote_ref=ref)
        self.changes += 1

    def set_sync_state(self, state: SyncState) -> None:
        for other in list(self._state.sync_states.values()):
            if other.remote_id == state.remote_id and other.event_id != state.event_id:
                # One local event per remote identity.
                self._state.sync_states.pop(other.event_id, None)
        self._state.sync_states[state.event_id] = state
        self.changes += 1

    def drop_sync_state(self, event_id: str) -> None:
        if self._state.sync_states.pop(event_id, None) is not None:
            self.changes += 1

    def replace_contents(self, events: list[Event], sync_states: list[SyncState]) -> None:
        for event in events:
            validate_event(event)
        self._state.events = {event.id: event.clone() for event in events}
        self._state.sync_states = {
            state.event_id: state for state in sync_states if state.event_id in self._state.events
        }
        self.changes += 1


class EventStore:
    def __init__(self, path: str | os.PathLike[str], timezone_name: str = "UTC") -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.tz = ZoneInfo(timezone_name)
        self._lock = threading.RLock()
        self._state = self._load()

    @property
    def _tmp_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + ".tmp")

    def _load(self) -> _StoreState:
        if self._tmp_path.exists():
            # Leftover from an interrupted write; the main file is still the last committed state.
            logger.warning("Discarding incomplete write %s", self._tmp_path)
            self._tmp_path.unlink()
        if not self.path.exists():
            return _StoreState()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                document = json.load(handle)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot read event store {self.path}: {exc}", operation="load") from exc
        if not isinstance(document, dict):
            raise StorageError(f"Event store {self.path} root must be an object.", operation="load")
        return _StoreState.from_document(document)

    def _persist(self, state: _StoreState) -> None:
        payload = json.dumps(state.to_document(), ensure_ascii=False, indent=2)
        tmp_path = self._tmp_path
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            tmp_path.replace(self.path)
        except OSError as exc:
            if tmp_path.exists():
                tmp_path.unlink()
            raise StorageError(f"Cannot write event store {self.path}: {exc}", operation="persist") from exc

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        with self._lock:
            staged = self._state.copy()
            tx = StoreTransaction(staged)
            yield tx
            if tx.changes:
                self._persist(staged)
                self._state = staged

    # Event operations

    def put(self, event: Event) -> Event:
        with self.transaction() as tx:
            return tx.put(event)

    def get(self, event_id: str, include_deleted: bool = False) -> Event | None:
        with self._lock:
            event = self._state.events.get(event_id)
        if event is None or (event.deleted and not include_deleted):
            return None
        return event.clone()

    def require(self, event_id: str, operation: str = "get") -> Event:
        event = self.get(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found.", operation=operation, event_id=event_id)
        return event

    def delete(self, event_id: str) -> Event:
        with self.transaction() as tx:
            return tx.tombstone(event_id)

    def compact(self) -> int:
        with self._lock:
            purgeable = [
                event.id
                for event in self._state.events.values()
                if event.deleted and event.remote_ref is None and event.id not in self._state.sync_states
            ]
            if not purgeable:
                return 0
            with self.transaction() as tx:
                for event_id in purgeable:
                    tx.purge(event_id)
        logger.info("Compaction purged %d tombstoned events", len(purgeable))
        return len(purgeable)

    def all_events(self, include_deleted: bool = True) -> list[Event]:
        with self._lock:
            events = list(self._state.events.values())
        return [
            event.clone()
            for event in sorted(events, key=lambda e: (e.start, e.id))
            if include_deleted or not event.deleted
        ]

    def count(self) -> int:
        with self._lock:
            return sum(1 for event in self._state.events.values() if not event.deleted)

    def day_bounds(self, now: datetime) -> tuple[datetime, datetime]:
        local_day = now.astimezone(self.tz).date()
        start = datetime.combine(local_day, time.min, tzinfo=self.tz)
        return start, start + timedelta(days=1)

    def matches(self, event: Event, flt: Filter, now: datetime) -> bool:
        if event.deleted and not flt.include_deleted:
            return False
        if flt.today:
            day_start, day_end = self.day_bounds(now)
            if not (day_start <= event.start < day_end):
                return False
        if flt.upcoming and event.start < now:
            return False
        if flt.start is not None and event.end <= flt.start:
            return False
        if flt.end is not None and event.start >= flt.end:
            return False
        if flt.tag and flt.tag.casefold() not in {tag.casefold() for tag in event.tags}:
            return False
        if flt.text:
            needle = flt.text.casefold()
            haystack = (event.title, event.description, event.location)
            if not any(needle in value.casefold() for value in haystack):
                return False
        return True

    def query(self, flt: Filter | None = None, now: datetime | None = None) -> Iterator[Event]:
        flt = flt or Filter()
        with self._lock:
            events = list(self._state.events.values())
        current = now or utc_now()
        returned = 0
        for event in sorted(events, key=lambda e: (e.start, e.id)):
            if flt.limit is not None and returned >= flt.limit:
                return
            if self.matches(event, flt, current):
                returned += 1
                yield event.clone()

    # Sync state

    def get_sync_state(self, event_id: str) -> SyncState | None:
        with self._lock:
            return self._state.sync_states.get(event_id)

    def sync_states(self) -> list[SyncState]:
        with self._lock:
            return list(self._state.sync_states.values())

    def find_by_remote_id(self, remote_id: str) -> Event | None:
        with self._lock:
            for state in self._state.sync_states.values():
                if state.remote_id == remote_id:
                    event = self._state.events.get(state.event_id)
                    return event.clone() if event else None
        return None

    # Snapshots

    def add_snapshot(self, reason: str, now: datetime | None = None) -> Snapshot:
        with self._lock:
            staged = self._state.copy()
            staged.snapshot_seq += 1
            snapshot = Snapshot(
                snapshot_id=f"snap-{staged.snapshot_seq:06d}",
                created_at=now or utc_now(),
                reason=reason,
                events=tuple(event.to_dict() for event in sorted(staged.events.values(), key=lambda e: e.id)),
                sync_states=tuple(state.to_dict() for state in staged.sync_states.values()),
            )
            staged.snapshots.append(snapshot)
            self._persist(staged)
            self._state = staged
            return snapshot

    def snapshots(self) -> list[Snapshot]:
        with self._lock:
            return list(self._state.snapshots)

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        with self._lock:
            for snapshot in self._state.snapshots:
                if snapshot.snapshot_id == snapshot_id:
                    return snapshot
        return None

    def remove_snapshots(self, snapshot_ids: set[str]) -> int:
        with self._lock:
            staged = self._state.copy()
            staged.snapshots = [s for s in staged.snapshots if s.snapshot_id not in snapshot_ids]
            removed = len(self._state.snapshots) - len(staged.snapshots)
            if removed:
                self._persist(staged)
                self._state = staged
            return removed
