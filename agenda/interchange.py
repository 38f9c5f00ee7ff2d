"""Export and import of the event set as JSON or iCalendar."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import vCalAddress

from agenda.backups import BackupManager
from agenda.caldav_client import _categories, _coerce_datetime, _decode_raw_ical
from agenda.errors import ValidationError
from agenda.event_store import EventStore
from agenda.models import Event, new_event_id, serialize_datetime, utc_now

logger = logging.getLogger(__name__)

INTERCHANGE_VERSION = 1
ICS_PRIORITY = {"urgent": 1, "high": 3, "medium": 5, "low": 9}


def _priority_from_ics(value: Any) -> str:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return "medium"
    if number <= 0:
        return "medium"
    if number <= 2:
        return "urgent"
    if number <= 4:
        return "high"
    if number <= 6:
        return "medium"
    return "low"


def export_json(store: EventStore, include_deleted: bool = False) -> str:
    events = [event.to_dict() for event in store.all_events(include_deleted=include_deleted)]
    document = {
        "version": INTERCHANGE_VERSION,
        "exported_at": serialize_datetime(utc_now()),
        "events": events,
    }
    return json.dumps(document, ensure_ascii=False, indent=2)


def parse_json(payload: str | bytes) -> list[Event]:
    try:
        document = json.loads(payload)
    except ValueError as exc:
        raise ValidationError(f"Import file is not valid JSON: {exc}", operation="import") from exc
    if isinstance(document, list):
        items = document
    elif isinstance(document, dict):
        items = document.get("events", [])
    else:
        raise ValidationError("Import file root must be an object or a list.", operation="import")
    if not isinstance(items, list):
        raise ValidationError("Import file 'events' must be a list.", operation="import")
    events: list[Event] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"Event #{index} must be an object.", operation="import")
        try:
            events.append(Event.from_dict(item))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Event #{index} is invalid: {exc}", operation="import") from exc
    return events


def export_ics(store: EventStore) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//Agenda//Schedule Export//EN")
    calendar_obj.add("VERSION", "2.0")
    for event in store.all_events(include_deleted=False):
        vevent = ICEvent()
        vevent.add("UID", event.id)
        vevent.add("SUMMARY", event.title)
        vevent.add("DTSTART", event.start)
        vevent.add("DTEND", event.end)
        vevent.add("DTSTAMP", event.updated_at)
        vevent.add("CREATED", event.created_at)
        if event.description:
            vevent.add("DESCRIPTION", event.description)
        if event.location:
            vevent.add("LOCATION", event.location)
        if event.tags:
            vevent.add("CATEGORIES", sorted(event.tags))
        vevent.add("PRIORITY", ICS_PRIORITY.get(event.priority, 5))
        for attendee in event.attendees:
            address = attendee if ":" in attendee else f"mailto:{attendee}"
            vevent.add("ATTENDEE", vCalAddress(address))
        calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def parse_ics(payload: str | bytes) -> list[Event]:
    try:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(payload))
    except ValueError as exc:
        raise ValidationError(f"Import file is not valid iCalendar: {exc}", operation="import") from exc
    events: list[Event] = []
    for component in calendar_obj.walk("VEVENT"):
        start = _coerce_datetime(component.decoded("DTSTART") if component.get("DTSTART") is not None else None)
        end = _coerce_datetime(
            component.decoded("DTEND") if component.get("DTEND") is not None else None, is_end=True
        )
        if start is None:
            logger.warning("Skipping VEVENT without DTSTART")
            continue
        if end is None:
            end = start + timedelta(hours=1)
        attendees_raw = component.get("ATTENDEE") or []
        if not isinstance(attendees_raw, list):
            attendees_raw = [attendees_raw]
        attendees = [str(item).removeprefix("mailto:").removeprefix("MAILTO:") for item in attendees_raw]
        created_at = _coerce_datetime(component.decoded("CREATED") if component.get("CREATED") is not None else None)
        events.append(
            Event(
                id=str(component.get("UID", "")).strip() or new_event_id(),
                title=str(component.get("SUMMARY", "")).strip(),
                start=start,
                end=end,
                description=str(component.get("DESCRIPTION", "")).strip(),
                location=str(component.get("LOCATION", "")).strip(),
                tags=_categories(component),
                priority=_priority_from_ics(component.get("PRIORITY")),
                attendees=[item for item in attendees if item],
                created_at=created_at or utc_now(),
            )
        )
    return events


class Importer:
    """Writes an imported event set into the store behind a checkpoint."""

    def __init__(self, store: EventStore, backups: BackupManager) -> None:
        self.store = store
        self.backups = backups

    def import_events(self, events: list[Event], source: str = "json") -> dict[str, Any]:
        seen: set[str] = set()
        for event in events:
            if event.id and event.id in seen:
                raise ValidationError(f"Duplicate event id {event.id} in import.", operation="import")
            seen.add(event.id)
        created = 0
        replaced = 0
        with self.backups.checkpoint(f"import:{source}") as snapshot_id:
            with self.store.transaction() as tx:
                for event in events:
                    existing = tx.get(event.id) if event.id else None
                    if existing is not None:
                        replaced += 1
                    else:
                        created += 1
                    # New ids keep the imported revision; a replaced record moves forward.
                    tx.put(event, touch=existing is not None or not event.id)
        logger.info("Imported %d events from %s (%d replaced)", created + replaced, source, replaced)
        return {"imported": created + replaced, "created": created, "replaced": replaced, "snapshot_id": snapshot_id}

    def import_json(self, payload: str | bytes) -> dict[str, Any]:
        return self.import_events(parse_json(payload), source="json")

    def import_ics(self, payload: str | bytes) -> dict[str, Any]:
        return self.import_events(parse_ics(payload), source="ics")
