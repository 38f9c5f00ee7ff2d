import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from typing import Any

from agenda.ai_client import MockInterpreter
from agenda.errors import AmbiguousInputError, CancelledError, InterpretError, InvalidArgsError
from agenda.intent import IntentResolver
from agenda.operations import (
    TODAY,
    Backup,
    Create,
    Delete,
    Filter,
    FreeText,
    Query,
    Restore,
    Stats,
    StructuredCommand,
    Update,
)
from agenda.planner import OperationDraft

NOW = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class _StaticInterpreter:
    def __init__(self, draft: OperationDraft) -> None:
        self.draft = draft
        self.calls: list[tuple[str, datetime, Any]] = []

    def interpret(self, utterance: str, current_time: datetime, context: Any = None) -> OperationDraft:
        self.calls.append((utterance, current_time, context))
        return self.draft


class _SlowInterpreter:
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds

    def interpret(self, utterance: str, current_time: datetime, context: Any = None) -> OperationDraft:
        time.sleep(self.seconds)
        return OperationDraft(kind="stats")


def _resolver(interpreter: Any = None, **kwargs: Any) -> IntentResolver:
    return IntentResolver(interpreter or MockInterpreter(), clock=lambda: NOW, **kwargs)


class StructuredCommandTests(unittest.TestCase):
    def test_create_command(self) -> None:
        op = _resolver().resolve(
            StructuredCommand(
                "create",
                {
                    "title": " Dentist ",
                    "start": "2024-01-15T14:00:00Z",
                    "end": "2024-01-15T15:00:00Z",
                    "tags": "health, teeth",
                    "priority": "High",
                },
            )
        )
        self.assertIsInstance(op, Create)
        self.assertEqual(op.draft.title, "Dentist")
        self.assertEqual(op.draft.start, datetime(2024, 1, 15, 14, tzinfo=timezone.utc))
        self.assertEqual(op.draft.tags, frozenset({"health", "teeth"}))
        self.assertEqual(op.draft.priority, "high")

    def test_naive_datetimes_use_configured_timezone(self) -> None:
        op = _resolver(timezone="Europe/Berlin").resolve(
            StructuredCommand("add", {"title": "Lunch", "start": "2024-01-15T12:00", "end": "2024-01-15T13:00"})
        )
        self.assertEqual(op.draft.start.astimezone(timezone.utc).hour, 11)

    def test_missing_and_unknown_arguments(self) -> None:
        with self.assertRaises(InvalidArgsError):
            _resolver().resolve(StructuredCommand("create", {"title": "No times"}))
        with self.assertRaises(InvalidArgsError):
            _resolver().resolve(StructuredCommand("delete", {"id": "x", "force": True}))
        with self.assertRaises(InvalidArgsError):
            _resolver().resolve(StructuredCommand("explode", {}))

    def test_rejects_inverted_interval_and_bad_values(self) -> None:
        with self.assertRaises(InvalidArgsError):
            _resolver().resolve(
                StructuredCommand("create", {"title": "x", "start": "2024-01-15T15:00Z", "end": "2024-01-15T14:00Z"})
            )
        with self.assertRaises(InvalidArgsError):
            _resolver().resolve(StructuredCommand("create", {"title": "x", "start": "soon", "end": "later"}))
        with self.assertRaises(InvalidArgsError):
            _resolver().resolve(StructuredCommand("list", {"limit": 0}))
        with self.assertRaises(InvalidArgsError):
            _resolver().resolve(StructuredCommand("update", {"id": "x", "priority": "whenever"}))

    def test_update_requires_a_change(self) -> None:
        with self.assertRaises(InvalidArgsError):
            _resolver().resolve(StructuredCommand("edit", {"id": "evt-1"}))
        op = _resolver().resolve(StructuredCommand("edit", {"id": "evt-1", "location": "Room 2"}))
        self.assertIsInstance(op, Update)
        self.assertEqual(op.patch.changes(), {"location": "Room 2"})

    def test_other_commands(self) -> None:
        resolver = _resolver()
        self.assertEqual(resolver.resolve(StructuredCommand("rm", {"id": "e"})), Delete("e"))
        self.assertEqual(resolver.resolve(StructuredCommand("list", {"today": "yes"})), Query(TODAY))
        self.assertEqual(resolver.resolve(StructuredCommand("search", {"query": "dent"})), Query(Filter(text="dent")))
        self.assertEqual(resolver.resolve(StructuredCommand("stats")), Stats())
        self.assertEqual(resolver.resolve(StructuredCommand("backup")), Backup("manual"))
        self.assertEqual(resolver.resolve(StructuredCommand("restore", {"snapshot_id": "snap-000001"})), Restore("snap-000001"))


class FreeTextTests(unittest.TestCase):
    def test_mock_show_todays_schedule_is_today_query(self) -> None:
        op = _resolver().resolve(FreeText("show today's schedule"))
        self.assertEqual(op, Query(TODAY))

    def test_mock_create_with_absolute_times(self) -> None:
        op = _resolver().resolve(FreeText("add Dentist from 2024-01-15T14:00:00Z to 2024-01-15T15:00:00Z"))
        self.assertIsInstance(op, Create)
        self.assertEqual(op.draft.title, "Dentist")
        self.assertEqual(op.draft.end - op.draft.start, timedelta(hours=1))

    def test_mock_search_and_tomorrow(self) -> None:
        resolver = _resolver()
        self.assertEqual(resolver.resolve(FreeText("search for dent")), Query(Filter(text="dent")))
        tomorrow = resolver.resolve(FreeText("what's on tomorrow?"))
        self.assertEqual(tomorrow.filter.start, datetime(2024, 1, 16, tzinfo=timezone.utc))

    def test_unrecognized_text_is_ambiguous(self) -> None:
        with self.assertRaises(AmbiguousInputError):
            _resolver().resolve(FreeText("purple monkey dishwasher"))
        with self.assertRaises(AmbiguousInputError):
            _resolver().resolve(FreeText("   "))

    def test_draft_missing_fields_is_ambiguous(self) -> None:
        interpreter = _StaticInterpreter(OperationDraft(kind="create", title="Dinner"))
        with self.assertRaises(AmbiguousInputError) as ctx:
            _resolver(interpreter).resolve(FreeText("dinner sometime"))
        self.assertIn("start", ctx.exception.message)

    def test_draft_passes_current_time_and_context(self) -> None:
        interpreter = _StaticInterpreter(OperationDraft(kind="delete", event_id="evt-9"))
        op = _resolver(interpreter).resolve(FreeText("drop the review"), context={"events": []})
        self.assertEqual(op, Delete("evt-9"))
        self.assertEqual(interpreter.calls[0][1], NOW)
        self.assertEqual(interpreter.calls[0][2], {"events": []})

    def test_cancellation_applies_nothing(self) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        try:
            with self.assertRaises(CancelledError):
                _resolver(_SlowInterpreter(1.0)).resolve(FreeText("stats"), cancel_event=cancel)
        finally:
            timer.cancel()

    def test_already_cancelled_request_never_calls_interpreter(self) -> None:
        interpreter = _StaticInterpreter(OperationDraft(kind="stats"))
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(CancelledError):
            _resolver(interpreter).resolve(FreeText("stats"), cancel_event=cancel)
        self.assertEqual(interpreter.calls, [])

    def test_interpreter_timeout(self) -> None:
        with self.assertRaises(InterpretError):
            _resolver(_SlowInterpreter(1.0), timeout_seconds=0.1).resolve(FreeText("stats"))


if __name__ == "__main__":
    unittest.main()
