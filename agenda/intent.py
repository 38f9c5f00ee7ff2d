"""Turn structured commands and free text into validated operations."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable
from zoneinfo import ZoneInfo

from agenda.ai_client import Interpreter
from agenda.errors import AmbiguousInputError, CancelledError, InterpretError, InvalidArgsError
from agenda.models import PRIORITIES, normalize_tags, utc_now
from agenda.operations import (
    Backup,
    Create,
    Delete,
    EventDraft,
    EventPatch,
    Filter,
    FreeText,
    Operation,
    Query,
    RawInput,
    Restore,
    Stats,
    StructuredCommand,
    Update,
)
from agenda.planner import OperationDraft

logger = logging.getLogger(__name__)

EVENT_FIELDS = {"title", "start", "end", "description", "location", "tags", "priority", "attendees"}
COMMAND_GRAMMAR: dict[str, tuple[set[str], set[str]]] = {
    "create": ({"title", "start", "end"}, {"description", "location", "tags", "priority", "attendees"}),
    "update": ({"id"}, EVENT_FIELDS),
    "delete": ({"id"}, set()),
    "list": (set(), {"today", "upcoming", "text", "search", "start", "end", "tag", "limit"}),
    "search": ({"query"}, {"limit"}),
    "stats": (set(), set()),
    "backup": (set(), {"reason"}),
    "restore": ({"snapshot_id"}, set()),
}
COMMAND_ALIASES = {"add": "create", "edit": "update", "remove": "delete", "rm": "delete", "ls": "list"}
POLL_SECONDS = 0.05


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class IntentResolver:
    def __init__(
        self,
        interpreter: Interpreter,
        timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.interpreter = interpreter
        self.tz = ZoneInfo(timezone)
        self.clock = clock
        self.timeout_seconds = timeout_seconds

    def resolve(
        self,
        raw: RawInput,
        *,
        cancel_event: threading.Event | None = None,
        context: dict[str, Any] | None = None,
    ) -> Operation:
        if isinstance(raw, StructuredCommand):
            return self.resolve_command(raw)
        if isinstance(raw, FreeText):
            return self.resolve_text(raw.text, cancel_event=cancel_event, context=context)
        raise InvalidArgsError(f"Unsupported input type: {type(raw).__name__}", operation="resolve")

    # Structured commands

    def _datetime(self, name: str, value: Any, command: str) -> datetime:
        if isinstance(value, datetime):
            parsed = value
        else:
            text = str(value or "").strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError as exc:
                raise InvalidArgsError(f"{name} is not an ISO 8601 datetime: {value!r}", operation=command) from exc
        # Naive input is read as wall-clock time in the configured zone.
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self.tz)
        return parsed

    @staticmethod
    def _text(name: str, value: Any, command: str) -> str:
        if not isinstance(value, (str, int, float)):
            raise InvalidArgsError(f"{name} must be text.", operation=command)
        return str(value).strip()

    @staticmethod
    def _list(name: str, value: Any, command: str) -> list[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set, frozenset)):
            return [str(item).strip() for item in value if str(item).strip()]
        raise InvalidArgsError(f"{name} must be a list of strings.", operation=command)

    @staticmethod
    def _flag(name: str, value: Any, command: str) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off", ""}:
            return False
        raise InvalidArgsError(f"{name} must be a boolean.", operation=command)

    @staticmethod
    def _limit(value: Any, command: str) -> int | None:
        if _is_blank(value):
            return None
        try:
            limit = int(value)
        except (TypeError, ValueError) as exc:
            raise InvalidArgsError("limit must be an integer.", operation=command) from exc
        if limit < 1:
            raise InvalidArgsError("limit must be positive.", operation=command)
        return limit

    def _priority(self, value: Any, command: str) -> str:
        priority = self._text("priority", value, command).lower()
        if priority not in PRIORITIES:
            raise InvalidArgsError(f"priority must be one of {', '.join(PRIORITIES)}.", operation=command)
        return priority

    def _event_fields(self, args: dict[str, Any], command: str) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for name in ("start", "end"):
            if not _is_blank(args.get(name)):
                fields[name] = self._datetime(name, args[name], command)
        for name in ("title", "description", "location"):
            if args.get(name) is not None:
                fields[name] = self._text(name, args[name], command)
        if args.get("tags") is not None:
            fields["tags"] = normalize_tags(self._list("tags", args["tags"], command))
        if args.get("attendees") is not None:
            fields["attendees"] = tuple(self._list("attendees", args["attendees"], command))
        if not _is_blank(args.get("priority")):
            fields["priority"] = self._priority(args["priority"], command)
        if "title" in fields and not fields["title"]:
            raise InvalidArgsError("title must not be empty.", operation=command)
        if "start" in fields and "end" in fields and fields["start"] >= fields["end"]:
            raise InvalidArgsError("start must be before end.", operation=command)
        return fields

    def resolve_command(self, command: StructuredCommand) -> Operation:
        name = COMMAND_ALIASES.get(command.name.strip().lower(), command.name.strip().lower())
        if name not in COMMAND_GRAMMAR:
            raise InvalidArgsError(f"Unknown command: {command.name}", operation=name)
        required, optional = COMMAND_GRAMMAR[name]
        args = {key: value for key, value in command.args.items() if value is not None}
        unknown = sorted(set(args) - required - optional)
        if unknown:
            raise InvalidArgsError(f"Unexpected arguments for {name}: {', '.join(unknown)}", operation=name)
        missing = sorted(field for field in required if _is_blank(args.get(field)))
        if missing:
            raise InvalidArgsError(f"Missing required arguments for {name}: {', '.join(missing)}", operation=name)

        if name == "create":
            return Create(EventDraft(**self._event_fields(args, name)))
        if name == "update":
            patch = EventPatch(**self._event_fields(args, name))
            if patch.is_empty():
                raise InvalidArgsError("update needs at least one field to change.", operation=name)
            return Update(event_id=self._text("id", args["id"], name), patch=patch)
        if name == "delete":
            return Delete(event_id=self._text("id", args["id"], name))
        if name == "list":
            start = self._datetime("start", args["start"], name) if not _is_blank(args.get("start")) else None
            end = self._datetime("end", args["end"], name) if not _is_blank(args.get("end")) else None
            if start is not None and end is not None and start >= end:
                raise InvalidArgsError("start must be before end.", operation=name)
            return Query(
                Filter(
                    today=self._flag("today", args.get("today", False), name),
                    upcoming=self._flag("upcoming", args.get("upcoming", False), name),
                    text=self._text("text", args.get("text") or args.get("search") or "", name),
                    start=start,
                    end=end,
                    tag=self._text("tag", args.get("tag", ""), name),
                    limit=self._limit(args.get("limit"), name),
                )
            )
        if name == "search":
            return Query(
                Filter(text=self._text("query", args["query"], name), limit=self._limit(args.get("limit"), name))
            )
        if name == "stats":
            return Stats()
        if name == "backup":
            return Backup(reason=self._text("reason", args.get("reason", "manual"), name) or "manual")
        return Restore(snapshot_id=self._text("snapshot_id", args["snapshot_id"], name))

    # Free text

    def _interpret(
        self, text: str, cancel_event: threading.Event | None, context: dict[str, Any] | None
    ) -> OperationDraft:
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError("Request cancelled before interpretation.", operation="interpret")
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agenda-interpret")
        try:
            future = executor.submit(self.interpreter.interpret, text, self.clock(), context)
            waited = 0.0
            while True:
                try:
                    return future.result(timeout=POLL_SECONDS)
                except FutureTimeout:
                    waited += POLL_SECONDS
                    if cancel_event is not None and cancel_event.is_set():
                        future.cancel()
                        raise CancelledError("Request cancelled by user.", operation="interpret")
                    if waited >= self.timeout_seconds:
                        future.cancel()
                        raise InterpretError("Interpreter timed out.", operation="interpret")
        finally:
            executor.shutdown(wait=False)

    def resolve_text(
        self,
        text: str,
        *,
        cancel_event: threading.Event | None = None,
        context: dict[str, Any] | None = None,
    ) -> Operation:
        if not text or not text.strip():
            raise AmbiguousInputError("Empty request. What would you like to do?", operation="resolve")
        draft = self._interpret(text, cancel_event, context)
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError("Request cancelled by user.", operation="interpret")
        logger.debug("Interpreted %r as %s", text, draft.kind)
        return self.from_draft(draft)

    def from_draft(self, draft: OperationDraft) -> Operation:
        kind = draft.kind
        if kind == "clarify":
            raise AmbiguousInputError(draft.message or "Could you rephrase that?", operation="resolve")
        if kind == "create":
            missing = [name for name in ("title", "start", "end") if _is_blank(getattr(draft, name))]
            if missing:
                raise AmbiguousInputError(
                    f"Please tell me the {', '.join(missing)} of the event.", operation="create"
                )
        if kind in {"update", "delete"} and _is_blank(draft.event_id):
            raise AmbiguousInputError("Which event do you mean?", operation=kind)
        if kind == "restore" and _is_blank(draft.snapshot_id):
            raise AmbiguousInputError("Which backup should be restored?", operation=kind)

        args: dict[str, Any] = {}
        if kind in {"create", "update"}:
            args = {name: getattr(draft, name) for name in EVENT_FIELDS if getattr(draft, name) is not None}
        if kind in {"update", "delete"}:
            args["id"] = draft.event_id
        if kind == "restore":
            args["snapshot_id"] = draft.snapshot_id
        if kind == "query":
            flt = draft.filter
            if flt is not None:
                args = {
                    "today": flt.today,
                    "upcoming": flt.upcoming,
                    "text": flt.text,
                    "start": flt.start,
                    "end": flt.end,
                    "tag": flt.tag,
                    "limit": flt.limit,
                }
            kind = "list"
        try:
            return self.resolve_command(StructuredCommand(name=kind, args=args))
        except InvalidArgsError as exc:
            raise AmbiguousInputError(exc.message, operation=exc.operation) from exc
