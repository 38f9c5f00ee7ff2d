from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


PRIORITIES = ("low", "medium", "high", "urgent")
EVENT_STATUS_ACTIVE = "active"
EVENT_STATUS_TOMBSTONED = "tombstoned"
EVENT_FIELDS = (
    "id",
    "title",
    "start",
    "end",
    "description",
    "location",
    "tags",
    "priority",
    "attendees",
    "remote_ref",
    "created_at",
    "updated_at",
    "status",
    "deleted",
)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO 8601 timestamp, got {type(value).__name__}.")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def next_revision(previous: datetime | None, now: datetime | None = None) -> datetime:
    """Return a modification timestamp strictly greater than ``previous``."""
    current = _ensure_tz(now or utc_now())
    if previous is not None and current <= previous:
        return previous + timedelta(microseconds=1)
    return current


def new_event_id() -> str:
    return str(uuid.uuid4())


def normalize_tags(values: Any) -> frozenset[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    elif not isinstance(values, (list, tuple, set, frozenset)):
        raise ValueError(f"Expected a list of tags, got {type(values).__name__}.")
    return frozenset(str(x).strip() for x in values if str(x).strip())


def normalize_priority(value: Any) -> str:
    text = str(value or "medium").strip().lower()
    return text if text in PRIORITIES else "medium"


@dataclass
class StorageConfig:
    data_dir: str = "data"
    backup_retention: int = 5

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(
            data_dir=str(data.get("data_dir", "data")).strip() or "data",
            backup_retention=max(1, int(data.get("backup_retention", 5))),
        )


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_name: str = "Agenda"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_name=str(data.get("calendar_name", "Agenda")).strip() or "Agenda",
        )


@dataclass
class AIConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: int = 30
    mock: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AIConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.openai.com/v1")).strip()
            or "https://api.openai.com/v1",
            api_key=str(data.get("api_key", "")).strip(),
            model=str(data.get("model", "gpt-4o-mini")).strip() or "gpt-4o-mini",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            mock=bool(data.get("mock", False)),
        )


@dataclass
class SyncConfig:
    lookback_days: int = 7
    lookahead_days: int = 30
    interval_seconds: int = 300
    timezone: str = "UTC"
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    request_timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            lookback_days=max(0, int(data.get("lookback_days", 7))),
            lookahead_days=max(1, int(data.get("lookahead_days", 30))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            max_attempts=max(1, int(data.get("max_attempts", 3))),
            backoff_seconds=max(0.0, float(data.get("backoff_seconds", 1.0))),
            request_timeout_seconds=max(1, int(data.get("request_timeout_seconds", 30))),
        )


@dataclass
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            ai=AIConfig.from_dict(data.get("ai")),
            sync=SyncConfig.from_dict(data.get("sync")),
            log_level=str(data.get("log_level", "INFO")).strip().upper() or "INFO",
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class RemoteRef:
    remote_id: str
    etag: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"remote_id": self.remote_id, "etag": self.etag}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteRef | None":
        if not data or not str(data.get("remote_id", "")).strip():
            return None
        return cls(remote_id=str(data["remote_id"]).strip(), etag=str(data.get("etag", "") or ""))


@dataclass
class Event:
    id: str
    title: str
    start: datetime
    end: datetime
    description: str = ""
    location: str = ""
    tags: frozenset[str] = field(default_factory=frozenset)
    priority: str = "medium"
    attendees: list[str] = field(default_factory=list)
    remote_ref: RemoteRef | None = None
    updated_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    status: str = EVENT_STATUS_ACTIVE
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def deleted(self) -> bool:
        return self.status == EVENT_STATUS_TOMBSTONED

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "title": self.title,
                "start": serialize_datetime(self.start),
                "end": serialize_datetime(self.end),
                "description": self.description,
                "location": self.location,
                "tags": sorted(self.tags),
                "priority": self.priority,
                "attendees": list(self.attendees),
                "remote_ref": self.remote_ref.to_dict() if self.remote_ref else None,
                "created_at": serialize_datetime(self.created_at),
                "updated_at": serialize_datetime(self.updated_at),
                "status": self.status,
                "deleted": self.deleted,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        if not isinstance(data, dict):
            raise ValueError(f"Event payload must be an object, got {type(data).__name__}.")
        attendees = data.get("attendees") or []
        if not isinstance(attendees, list):
            raise ValueError(f"Expected a list of attendees, got {type(attendees).__name__}.")
        remote_ref = data.get("remote_ref")
        if remote_ref is not None and not isinstance(remote_ref, dict):
            raise ValueError(f"Expected remote_ref to be an object, got {type(remote_ref).__name__}.")
        status = str(data.get("status", "") or "").strip().lower()
        if status not in {EVENT_STATUS_ACTIVE, EVENT_STATUS_TOMBSTONED}:
            status = EVENT_STATUS_TOMBSTONED if data.get("deleted") else EVENT_STATUS_ACTIVE
        start = parse_iso_datetime(data.get("start"))
        end = parse_iso_datetime(data.get("end"))
        if start is None or end is None:
            raise ValueError("Event payload requires start and end.")
        updated_at = parse_iso_datetime(data.get("updated_at")) or utc_now()
        return cls(
            id=str(data.get("id", "")).strip(),
            title=str(data.get("title", "") or "").strip(),
            start=start,
            end=end,
            description=str(data.get("description", "") or ""),
            location=str(data.get("location", "") or ""),
            tags=normalize_tags(data.get("tags")),
            priority=normalize_priority(data.get("priority")),
            attendees=[str(x).strip() for x in attendees if str(x).strip()],
            remote_ref=RemoteRef.from_dict(remote_ref),
            updated_at=updated_at,
            created_at=parse_iso_datetime(data.get("created_at")) or updated_at,
            status=status,
            extra={k: v for k, v in data.items() if k not in EVENT_FIELDS},
        )

    def clone(self) -> "Event":
        return Event(
            id=self.id,
            title=self.title,
            start=self.start,
            end=self.end,
            description=self.description,
            location=self.location,
            tags=frozenset(self.tags),
            priority=self.priority,
            attendees=list(self.attendees),
            remote_ref=self.remote_ref,
            updated_at=self.updated_at,
            created_at=self.created_at,
            status=self.status,
            extra=dict(self.extra),
        )

    def with_updates(self, **kwargs: Any) -> "Event":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    def content_key(self) -> tuple[str, str | None, str | None]:
        return (
            self.title.strip().casefold(),
            serialize_datetime(self.start.astimezone(timezone.utc)),
            serialize_datetime(self.end.astimezone(timezone.utc)),
        )


@dataclass
class SyncState:
    event_id: str
    remote_id: str
    remote_etag: str
    last_synced_revision: str
    synced_at: str = ""
    dirty: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncState":
        return cls(
            event_id=str(data.get("event_id", "")).strip(),
            remote_id=str(data.get("remote_id", "")).strip(),
            remote_etag=str(data.get("remote_etag", "") or ""),
            last_synced_revision=str(data.get("last_synced_revision", "") or ""),
            synced_at=str(data.get("synced_at", "") or ""),
            dirty=bool(data.get("dirty", False)),
        )


@dataclass(frozen=True)
class Snapshot:
    snapshot_id: str
    created_at: datetime
    reason: str
    events: tuple[dict[str, Any], ...] = ()
    sync_states: tuple[dict[str, Any], ...] = ()

    def to_dict(self, include_payload: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "snapshot_id": self.snapshot_id,
            "created_at": serialize_datetime(self.created_at),
            "reason": self.reason,
            "event_count": len(self.events),
        }
        if include_payload:
            payload["events"] = [dict(item) for item in self.events]
            payload["sync_states"] = [dict(item) for item in self.sync_states]
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        return cls(
            snapshot_id=str(data["snapshot_id"]),
            created_at=parse_iso_datetime(data.get("created_at")) or utc_now(),
            reason=str(data.get("reason", "") or ""),
            events=tuple(dict(item) for item in data.get("events", []) or []),
            sync_states=tuple(dict(item) for item in data.get("sync_states", []) or []),
        )

    def event_by_id(self, event_id: str) -> Event | None:
        for item in self.events:
            if item.get("id") == event_id:
                return Event.from_dict(item)
        return None


@dataclass
class SyncReport:
    status: str
    stage: str
    message: str
    trigger: str
    duration_ms: int = 0
    planned: int = 0
    changes_applied: int = 0
    conflicts: int = 0
    stale: int = 0
    snapshot_id: str = ""
    actions: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "stage": self.stage,
            "message": self.message,
            "trigger": self.trigger,
            "duration_ms": self.duration_ms,
            "planned": self.planned,
            "changes_applied": self.changes_applied,
            "conflicts": self.conflicts,
            "stale": self.stale,
            "snapshot_id": self.snapshot_id,
            "actions": dict(self.actions),
            "errors": [dict(item) for item in self.errors],
            "run_at": serialize_datetime(self.run_at),
        }


def sync_window(now: datetime, lookback_days: int, lookahead_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    start = datetime.combine(now_utc.date() - timedelta(days=max(0, lookback_days)), time.min, tzinfo=now_utc.tzinfo)
    end = datetime.combine(now_utc.date() + timedelta(days=max(1, lookahead_days)), time.max, tzinfo=now_utc.tzinfo)
    return start, end
