from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from agenda.models import serialize_datetime


@dataclass(frozen=True)
class EventDraft:
    title: str
    start: datetime
    end: datetime
    description: str = ""
    location: str = ""
    tags: frozenset[str] = field(default_factory=frozenset)
    priority: str = "medium"
    attendees: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "description": self.description,
            "location": self.location,
            "tags": sorted(self.tags),
            "priority": self.priority,
            "attendees": list(self.attendees),
        }


@dataclass(frozen=True)
class EventPatch:
    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    description: str | None = None
    location: str | None = None
    tags: frozenset[str] | None = None
    priority: str | None = None
    attendees: tuple[str, ...] | None = None

    def changes(self) -> dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in ("title", "start", "end", "description", "location", "tags", "priority", "attendees")
            if getattr(self, name) is not None
        }

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass(frozen=True)
class Filter:
    today: bool = False
    upcoming: bool = False
    text: str = ""
    start: datetime | None = None
    end: datetime | None = None
    tag: str = ""
    limit: int | None = None
    include_deleted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "today": self.today,
            "upcoming": self.upcoming,
            "text": self.text,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "tag": self.tag,
            "limit": self.limit,
        }


TODAY = Filter(today=True)
UPCOMING = Filter(upcoming=True)


@dataclass(frozen=True)
class Create:
    draft: EventDraft
    kind = "create"


@dataclass(frozen=True)
class Update:
    event_id: str
    patch: EventPatch
    kind = "update"


@dataclass(frozen=True)
class Delete:
    event_id: str
    kind = "delete"


@dataclass(frozen=True)
class Query:
    filter: Filter = field(default_factory=Filter)
    kind = "query"


@dataclass(frozen=True)
class Stats:
    kind = "stats"


@dataclass(frozen=True)
class Backup:
    reason: str = "manual"
    kind = "backup"


@dataclass(frozen=True)
class Restore:
    snapshot_id: str
    kind = "restore"


Operation = Union[Create, Update, Delete, Query, Stats, Backup, Restore]
MUTATING_OPERATIONS = (Create, Update, Delete, Restore)


@dataclass(frozen=True)
class StructuredCommand:
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FreeText:
    text: str


RawInput = Union[StructuredCommand, FreeText]
