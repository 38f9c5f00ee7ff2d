"""Remote Calendar contract and an in-process implementation."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol, runtime_checkable

from agenda.errors import RemoteNotFoundError, StaleRevisionError
from agenda.models import RemoteRef, serialize_datetime
from agenda.operations import EventDraft

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteEvent:
    """Event as seen by the remote calendar, identified by ``remote_id`` at revision ``etag``."""

    remote_id: str
    etag: str
    title: str
    start: datetime
    end: datetime
    description: str = ""
    location: str = ""
    tags: frozenset[str] = field(default_factory=frozenset)

    @property
    def ref(self) -> RemoteRef:
        return RemoteRef(remote_id=self.remote_id, etag=self.etag)

    def to_dict(self) -> dict[str, object]:
        return {
            "remote_id": self.remote_id,
            "etag": self.etag,
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "description": self.description,
            "location": self.location,
            "tags": sorted(self.tags),
        }


@runtime_checkable
class RemoteCalendar(Protocol):
    """Capabilities the sync engine needs from a remote calendar."""

    def list_events(self, start: datetime, end: datetime) -> list[RemoteEvent]: ...

    def create_event(self, draft: EventDraft) -> RemoteRef: ...

    def update_event(self, ref: RemoteRef, patch: EventDraft, expected_revision: str) -> RemoteRef: ...

    def delete_event(self, ref: RemoteRef) -> None: ...


class InMemoryRemoteCalendar:
    """Remote calendar kept in process memory, used in offline mode and tests."""

    def __init__(self, events: list[RemoteEvent] | None = None) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, RemoteEvent] = {}
        self._ids = itertools.count(1)
        self._revisions = itertools.count(1)
        for event in events or []:
            self._events[event.remote_id] = event

    def _next_etag(self) -> str:
        return f"rev-{next(self._revisions)}"

    def list_events(self, start: datetime, end: datetime) -> list[RemoteEvent]:
        with self._lock:
            events = list(self._events.values())
        return sorted(
            (event for event in events if event.start < end and start < event.end),
            key=lambda e: (e.start, e.remote_id),
        )

    def get(self, remote_id: str) -> RemoteEvent | None:
        with self._lock:
            return self._events.get(remote_id)

    def create_event(self, draft: EventDraft) -> RemoteRef:
        with self._lock:
            remote_id = f"remote-{next(self._ids)}"
            event = RemoteEvent(
                remote_id=remote_id,
                etag=self._next_etag(),
                title=draft.title,
                start=draft.start,
                end=draft.end,
                description=draft.description,
                location=draft.location,
                tags=frozenset(draft.tags),
            )
            self._events[remote_id] = event
        logger.debug("Created remote event %s", remote_id)
        return event.ref

    def update_event(self, ref: RemoteRef, patch: EventDraft, expected_revision: str) -> RemoteRef:
        with self._lock:
            current = self._events.get(ref.remote_id)
            if current is None:
                raise RemoteNotFoundError(f"Remote event {ref.remote_id} not found.")
            if expected_revision and current.etag != expected_revision:
                raise StaleRevisionError(ref.remote_id, expected_revision, current.etag)
            updated = replace(
                current,
                etag=self._next_etag(),
                title=patch.title,
                start=patch.start,
                end=patch.end,
                description=patch.description,
                location=patch.location,
                tags=frozenset(patch.tags),
            )
            self._events[ref.remote_id] = updated
        return updated.ref

    def delete_event(self, ref: RemoteRef) -> None:
        with self._lock:
            if self._events.pop(ref.remote_id, None) is None:
                raise RemoteNotFoundError(f"Remote event {ref.remote_id} not found.")

    def edit(self, remote_id: str, **changes: object) -> RemoteEvent:
        """Change an event as another client of the remote calendar would."""
        with self._lock:
            current = self._events[remote_id]
            updated = replace(current, etag=self._next_etag(), **changes)
            self._events[remote_id] = updated
            return updated
