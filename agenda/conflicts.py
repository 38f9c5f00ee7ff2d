from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Iterable

from agenda.event_store import EventStore
from agenda.models import Event
from agenda.operations import EventDraft, Filter
from agenda.remote import RemoteCalendar, RemoteEvent

logger = logging.getLogger(__name__)


class Scope(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open ``[start, end)`` intersection test."""
    return a_start < b_end and b_start < a_end


def merge_intervals(intervals: Iterable[tuple[datetime, datetime]]) -> list[tuple[datetime, datetime]]:
    merged: list[tuple[datetime, datetime]] = []
    for start, end in sorted(intervals):
        if end <= start:
            continue
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def free_intervals(
    busy: Iterable[tuple[datetime, datetime]],
    window_start: datetime,
    window_end: datetime,
    min_duration: timedelta = timedelta(0),
) -> list[tuple[datetime, datetime]]:
    """Complement of the merged busy intervals inside the window."""
    free: list[tuple[datetime, datetime]] = []
    cursor = window_start
    clipped = [(max(start, window_start), min(end, window_end)) for start, end in busy]
    for start, end in merge_intervals(clipped):
        if start > cursor and start - cursor >= min_duration:
            free.append((cursor, start))
        cursor = max(cursor, end)
    if window_end > cursor and window_end - cursor >= min_duration:
        free.append((cursor, window_end))
    return [(start, end) for start, end in free if end > start]


def remote_to_event(remote_event: RemoteEvent) -> Event:
    return Event(
        id="",
        title=remote_event.title,
        start=remote_event.start,
        end=remote_event.end,
        description=remote_event.description,
        location=remote_event.location,
        tags=remote_event.tags,
        remote_ref=remote_event.ref,
    )


class ConflictDetector:
    def __init__(self, store: EventStore, remote: RemoteCalendar | None = None) -> None:
        self.store = store
        self.remote = remote

    def find_overlaps(
        self,
        candidate: EventDraft,
        scope: Scope = Scope.LOCAL,
        exclude_id: str | None = None,
    ) -> list[Event]:
        overlaps: list[Event] = []
        local_remote_ids: set[str] = set()
        if scope in (Scope.LOCAL, Scope.BOTH):
            window = Filter(start=candidate.start, end=candidate.end)
            for event in self.store.query(window):
                if event.id == exclude_id:
                    continue
                if intervals_overlap(candidate.start, candidate.end, event.start, event.end):
                    overlaps.append(event)
                    if event.remote_ref:
                        local_remote_ids.add(event.remote_ref.remote_id)
        if scope in (Scope.REMOTE, Scope.BOTH) and self.remote is not None:
            excluded_remote = None
            if exclude_id:
                state = self.store.get_sync_state(exclude_id)
                excluded_remote = state.remote_id if state else None
            for remote_event in self.remote.list_events(candidate.start, candidate.end):
                if remote_event.remote_id in local_remote_ids or remote_event.remote_id == excluded_remote:
                    continue
                if intervals_overlap(candidate.start, candidate.end, remote_event.start, remote_event.end):
                    overlaps.append(remote_to_event(remote_event))
        overlaps.sort(key=lambda e: (e.start, e.id))
        if overlaps:
            logger.debug("Draft %r overlaps %d events", candidate.title, len(overlaps))
        return overlaps

    @staticmethod
    def find_duplicate(event: Event, remote_events: Iterable[RemoteEvent]) -> RemoteEvent | None:
        """Remote event with the same title and exact interval, if any."""
        key = event.content_key()
        for remote_event in remote_events:
            if remote_to_event(remote_event).content_key() == key:
                return remote_event
        return None
