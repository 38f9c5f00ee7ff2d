from __future__ import annotations

import hashlib
import logging
import re
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import caldav
import requests
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from agenda.errors import RemoteError, RemoteNotFoundError, StaleRevisionError, TransientRemoteError
from agenda.models import CalDAVConfig, RemoteRef, date_to_datetime
from agenda.operations import EventDraft
from agenda.remote import RemoteEvent

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (requests.RequestException, caldav_error.DAVError, ConnectionError, TimeoutError)


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _normalize_calendar_name(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def _coerce_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value, is_end=is_end)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _categories(vevent: ICEvent) -> frozenset[str]:
    raw = vevent.get("CATEGORIES")
    if raw is None:
        return frozenset()
    items = raw if isinstance(raw, list) else [raw]
    tags: set[str] = set()
    for item in items:
        values = getattr(item, "cats", None)
        if values is None:
            values = str(item).split(",")
        tags.update(str(value).strip() for value in values if str(value).strip())
    return frozenset(tags)


def parse_ical_event(raw_data: Any, href: str = "") -> RemoteEvent:
    raw_ical = _decode_raw_ical(raw_data)
    calendar_obj = ICalendar.from_ical(raw_ical)
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        raise ValueError("VEVENT missing in calendar resource.")

    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    start = _coerce_datetime(dtstart_raw, is_end=False)
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    end = _coerce_datetime(dtend_raw, is_end=True)
    if start is None:
        raise ValueError("DTSTART missing in calendar resource.")
    if end is None:
        end = start + timedelta(hours=1)
    uid = str(vevent.get("UID", "")).strip() or href
    return RemoteEvent(
        remote_id=uid,
        etag=_data_hash(raw_ical),
        title=str(vevent.get("SUMMARY", "")).strip(),
        start=start,
        end=end,
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        location=str(vevent.get("LOCATION", "")).strip(),
        tags=_categories(vevent),
    )


def build_ical(uid: str, draft: EventDraft) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//Agenda//Schedule Sync//EN")
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", uid)
    vevent.add("SUMMARY", draft.title)
    if draft.description:
        vevent.add("DESCRIPTION", draft.description)
    if draft.location:
        vevent.add("LOCATION", draft.location)
    if draft.tags:
        vevent.add("CATEGORIES", sorted(draft.tags))
    vevent.add("DTSTART", draft.start)
    vevent.add("DTEND", draft.end)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


class CalDAVRemoteCalendar:
    """Remote calendar backed by one CalDAV collection, found or created by name."""

    def __init__(self, config: CalDAVConfig, timeout_seconds: int = 30) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds
        self._client: Any = None
        self._principal: Any = None
        self._calendar: Any = None

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.username)

    def _connect(self) -> Any:
        if self._calendar is not None:
            return self._calendar
        if not self.is_configured():
            raise RemoteError("CalDAV config is incomplete.")
        try:
            self._client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
                timeout=self.timeout_seconds,
            )
            self._principal = self._client.principal()
            self._calendar = self._ensure_calendar(self.config.calendar_name)
        except TRANSPORT_ERRORS as exc:
            self._principal = None
            raise TransientRemoteError(f"CalDAV connection failed: {exc}") from exc
        return self._calendar

    def _ensure_calendar(self, name: str) -> Any:
        wanted = _normalize_calendar_name(name)
        same_name = [
            calendar
            for calendar in self._principal.calendars()
            if _normalize_calendar_name(getattr(calendar, "name", "") or "") == wanted
        ]
        if same_name:
            same_name.sort(key=lambda item: str(item.url))
            return same_name[0]
        logger.info("Creating CalDAV calendar %r", name)
        return self._principal.make_calendar(name=name)

    def _find_resource(self, remote_id: str) -> Any:
        calendar = self._connect()
        try:
            resource = calendar.event_by_uid(remote_id)
        except caldav_error.NotFoundError as exc:
            raise RemoteNotFoundError(f"Remote event {remote_id} not found.") from exc
        except TRANSPORT_ERRORS as exc:
            raise TransientRemoteError(f"CalDAV lookup failed: {exc}") from exc
        if isinstance(resource, list):
            resource = resource[0] if resource else None
        if resource is None:
            raise RemoteNotFoundError(f"Remote event {remote_id} not found.")
        return resource

    def list_events(self, start: datetime, end: datetime) -> list[RemoteEvent]:
        calendar = self._connect()
        try:
            resources = calendar.search(start=start, end=end, event=True, expand=False)
        except TRANSPORT_ERRORS as exc:
            raise TransientRemoteError(f"CalDAV search failed: {exc}") from exc
        events: list[RemoteEvent] = []
        for resource in resources:
            try:
                events.append(parse_ical_event(resource.data, href=str(getattr(resource, "url", "") or "")))
            except ValueError as exc:
                logger.warning("Skipping unreadable CalDAV resource %s: %s", getattr(resource, "url", "?"), exc)
        return events

    def create_event(self, draft: EventDraft) -> RemoteRef:
        calendar = self._connect()
        uid = str(uuid.uuid4())
        raw_ical = build_ical(uid, draft)
        try:
            resource = calendar.save_event(raw_ical)
        except TRANSPORT_ERRORS as exc:
            raise TransientRemoteError(f"CalDAV create failed: {exc}") from exc
        return RemoteRef(remote_id=uid, etag=self._stored_etag(resource, raw_ical))

    @staticmethod
    def _stored_etag(resource: Any, fallback_ical: str) -> str:
        # Servers may normalize the payload, so hash what they actually store.
        try:
            resource.load()
        except TRANSPORT_ERRORS as exc:
            logger.warning("Could not reload CalDAV resource after write: %s", exc)
        data = getattr(resource, "data", None) or fallback_ical
        return _data_hash(_decode_raw_ical(data))

    def update_event(self, ref: RemoteRef, patch: EventDraft, expected_revision: str) -> RemoteRef:
        resource = self._find_resource(ref.remote_id)
        current_etag = _data_hash(_decode_raw_ical(resource.data))
        if expected_revision and current_etag != expected_revision:
            raise StaleRevisionError(ref.remote_id, expected_revision, current_etag)
        raw_ical = build_ical(ref.remote_id, patch)
        resource.data = raw_ical
        try:
            resource.save()
        except TRANSPORT_ERRORS as exc:
            raise TransientRemoteError(f"CalDAV update failed: {exc}") from exc
        return RemoteRef(remote_id=ref.remote_id, etag=self._stored_etag(resource, raw_ical))

    def delete_event(self, ref: RemoteRef) -> None:
        resource = self._find_resource(ref.remote_id)
        try:
            resource.delete()
        except caldav_error.NotFoundError as exc:
            raise RemoteNotFoundError(f"Remote event {ref.remote_id} not found.") from exc
        except TRANSPORT_ERRORS as exc:
            raise TransientRemoteError(f"CalDAV delete failed: {exc}") from exc
