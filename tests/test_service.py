import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from agenda.ai_client import MockInterpreter
from agenda.errors import AmbiguousInputError, NotFoundError, ValidationError
from agenda.models import AIConfig, AppConfig, StorageConfig, SyncConfig
from agenda.operations import Create, EventDraft, FreeText, StructuredCommand
from agenda.remote import InMemoryRemoteCalendar
from agenda.service import build_service

NOW = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


def _at(hours: float) -> datetime:
    return NOW + timedelta(hours=hours)


class ScheduleServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = AppConfig(
            storage=StorageConfig(data_dir=self.temp_dir.name, backup_retention=10),
            ai=AIConfig(mock=True),
            sync=SyncConfig(lookback_days=7, lookahead_days=14),
        )
        self.service = build_service(self.config, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _create(self, title: str, start: datetime, hours: float = 1, **args: str) -> str:
        result = self.service.handle(
            StructuredCommand(
                "create",
                {"title": title, "start": start.isoformat(), "end": (start + timedelta(hours=hours)).isoformat(), **args},
            )
        )
        return result.event.id

    def test_dentist_lifecycle(self) -> None:
        created = self.service.handle(
            StructuredCommand("create", {"title": "Dentist", "start": "2024-01-15T14:00:00Z", "end": "2024-01-15T15:00:00Z"})
        )
        self.assertEqual(created.status, "ok")
        event_id = created.event.id

        today = self.service.handle(StructuredCommand("list", {"today": True}))
        self.assertEqual([event.id for event in today.events], [event_id])

        found = self.service.handle(StructuredCommand("search", {"query": "dent"}))
        self.assertEqual([event.title for event in found.events], ["Dentist"])

        self.service.handle(StructuredCommand("delete", {"id": event_id}))
        self.assertEqual(self.service.handle(StructuredCommand("list", {"today": True})).events, [])
        self.assertIsNotNone(self.service.store.get(event_id, include_deleted=True))

        compacted = self.service.compact()
        self.assertEqual(compacted["purged"], 1)
        self.assertIsNone(self.service.store.get(event_id, include_deleted=True))
        self.assertEqual(self.service.backups.get(compacted["snapshot_id"]).reason, "compact")

    def test_free_text_query_through_mock_interpreter(self) -> None:
        self._create("Standup", _at(1))
        result = self.service.handle(FreeText("show today's schedule"))
        self.assertEqual(result.kind, "query")
        self.assertEqual([event.title for event in result.events], ["Standup"])
        with self.assertRaises(AmbiguousInputError):
            self.service.handle(FreeText("purple monkey dishwasher"))

    def test_overlap_is_a_warning_not_a_rejection(self) -> None:
        first = self._create("Review", _at(2), hours=2)
        result = self.service.handle(
            StructuredCommand("create", {"title": "Lunch", "start": _at(3).isoformat(), "end": _at(4).isoformat()})
        )
        self.assertEqual(result.status, "ok")
        self.assertEqual([item["id"] for item in result.warnings], [first])
        self.assertEqual(self.service.store.count(), 2)

        # Back-to-back intervals do not overlap.
        adjacent = self.service.handle(
            StructuredCommand("create", {"title": "Coffee", "start": _at(4).isoformat(), "end": _at(5).isoformat()})
        )
        self.assertEqual(adjacent.warnings, [])

    def test_update_validates_resulting_interval(self) -> None:
        event_id = self._create("Review", _at(2))
        with self.assertRaises(ValidationError):
            self.service.handle(StructuredCommand("update", {"id": event_id, "end": _at(1).isoformat()}))
        updated = self.service.handle(StructuredCommand("update", {"id": event_id, "location": "Room 4"}))
        self.assertEqual(updated.event.location, "Room 4")
        with self.assertRaises(NotFoundError):
            self.service.handle(StructuredCommand("update", {"id": "evt-missing", "title": "x"}))

    def test_stats(self) -> None:
        self._create("Past", _at(-30), tags="work", priority="high")
        self._create("Soon", _at(2), tags="work, health")
        self._create("Next week", _at(24 * 7), priority="low")
        gone = self._create("Dropped", _at(5))
        self.service.handle(StructuredCommand("delete", {"id": gone}))

        stats = self.service.handle(StructuredCommand("stats")).stats

        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["upcoming"], 2)
        self.assertEqual(stats["past"], 1)
        self.assertEqual(stats["tombstoned"], 1)
        self.assertEqual(stats["by_day"], {"2024-01-14": 1, "2024-01-15": 1, "2024-01-22": 1})
        self.assertEqual(stats["by_week"], {"2024-W02": 1, "2024-W03": 1, "2024-W04": 1})
        self.assertEqual(stats["by_tag"], {"health": 1, "work": 2})
        self.assertEqual(stats["by_priority"], {"urgent": 0, "high": 1, "medium": 1, "low": 1})

    def test_find_free(self) -> None:
        self._create("Busy", _at(1), hours=2)
        slots = self.service.find_free(duration_minutes=60, horizon_days=1)
        self.assertEqual(slots[0], (NOW, _at(1)))
        self.assertEqual(slots[1], (_at(3), _at(24)))
        self.assertEqual(self.service.find_free(duration_minutes=90, horizon_days=1), [(_at(3), _at(24))])
        with self.assertRaises(ValidationError):
            self.service.find_free(duration_minutes=0)

    def test_backup_and_restore_commands(self) -> None:
        kept = self._create("Kept", _at(1))
        backup = self.service.handle(StructuredCommand("backup"))
        later = self._create("Later", _at(3))

        restored = self.service.handle(StructuredCommand("restore", {"snapshot_id": backup.snapshot_id}))

        self.assertIsNotNone(self.service.store.get(kept))
        self.assertIsNone(self.service.store.get(later))
        self.assertIsNotNone(self.service.backups.get(restored.snapshot_id).event_by_id(later))

    def test_export_import_formats(self) -> None:
        self._create("Dentist", _at(5))
        payload = self.service.export("json")
        other = build_service(
            AppConfig(storage=StorageConfig(data_dir=f"{self.temp_dir.name}/other"), ai=AIConfig(mock=True)),
            clock=lambda: NOW,
        )
        self.assertEqual(other.import_data(payload, "json")["imported"], 1)
        self.assertIn("BEGIN:VEVENT", self.service.export("ics"))
        with self.assertRaises(ValidationError):
            self.service.export("xml")
        with self.assertRaises(ValidationError):
            other.import_data(payload, "xml")

    def test_run_sync_without_remote_is_skipped(self) -> None:
        report = self.service.run_sync()
        self.assertEqual(report.status, "skipped")
        self.assertIsNone(self.service.sync_engine)
        self.assertEqual(self.service.sync_history(), [])


class ServiceSyncTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.remote = InMemoryRemoteCalendar()
        config = AppConfig(
            storage=StorageConfig(data_dir=self.temp_dir.name, backup_retention=10),
            ai=AIConfig(mock=True),
            sync=SyncConfig(lookback_days=7, lookahead_days=14),
        )
        self.service = build_service(config, remote=self.remote, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_run_sync_pushes_local_changes_and_records_history(self) -> None:
        self.service.handle(
            StructuredCommand("create", {"title": "Dentist", "start": _at(5).isoformat(), "end": _at(6).isoformat()})
        )
        report = self.service.run_sync(trigger="manual")
        self.assertEqual(report.status, "success")
        self.assertEqual(len(self.remote.list_events(_at(-1), _at(24))), 1)
        self.assertEqual(self.service.sync_history(limit=1)[0]["trigger"], "manual")
        self.assertEqual(self.service.audit_events()[0]["action"], "push_create")

    def test_edit_during_sync_is_queued_and_applied_after(self) -> None:
        original_list = self.remote.list_events
        queued = []

        def list_and_edit(start: datetime, end: datetime):
            if not queued:
                draft = EventDraft(title="Typed mid-sync", start=_at(2), end=_at(3))
                queued.append(self.service.apply(Create(draft)))
            return original_list(start, end)

        self.remote.list_events = list_and_edit
        report = self.service.run_sync()

        self.assertEqual(report.status, "success")
        self.assertEqual(report.planned, 0)
        result = queued[0]
        self.assertEqual(result.status, "queued")
        applied = result.future.result(timeout=1)
        self.assertEqual(applied.status, "ok")
        self.assertEqual(self.service.store.get(applied.event.id).title, "Typed mid-sync")
        self.assertEqual(self.remote.list_events(_at(-1), _at(24)), [])

        # The next pass picks up the queued change.
        self.remote.list_events = original_list
        self.assertEqual(self.service.run_sync().actions, {"push_create": 1})

    def test_reads_are_not_queued_during_sync(self) -> None:
        original_list = self.remote.list_events
        seen = []

        def list_and_read(start: datetime, end: datetime):
            seen.append(self.service.handle(StructuredCommand("stats")))
            return original_list(start, end)

        self.remote.list_events = list_and_read
        self.service.run_sync()
        self.assertEqual(seen[0].status, "ok")
        self.assertEqual(seen[0].stats["total"], 0)

    def test_queued_edit_that_crashes_does_not_block_later_ones(self) -> None:
        original_list = self.remote.list_events
        original_apply = self.service._apply
        queued = []

        def list_and_edit(start: datetime, end: datetime):
            if not queued:
                for title in ("Broken", "Fine"):
                    queued.append(self.service.apply(Create(EventDraft(title=title, start=_at(2), end=_at(3)))))
            return original_list(start, end)

        def apply_or_crash(operation):
            if isinstance(operation, Create) and operation.draft.title == "Broken":
                raise RuntimeError("disk on fire")
            return original_apply(operation)

        self.remote.list_events = list_and_edit
        with mock.patch.object(self.service, "_apply", side_effect=apply_or_crash):
            self.service.run_sync()

        with self.assertRaises(RuntimeError):
            queued[0].future.result(timeout=1)
        applied = queued[1].future.result(timeout=1)
        self.assertEqual(self.service.store.get(applied.event.id).title, "Fine")


class RecordingInterpreter(MockInterpreter):
    def __init__(self) -> None:
        super().__init__()
        self.contexts: list[dict] = []

    def interpret(self, utterance, current_time, context=None):
        self.contexts.append(context or {})
        return super().interpret(utterance, current_time, context)


class ConversationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        config = AppConfig(
            storage=StorageConfig(data_dir=self.temp_dir.name, backup_retention=10),
            ai=AIConfig(mock=True),
            sync=SyncConfig(lookback_days=7, lookahead_days=14),
        )
        self.interpreter = RecordingInterpreter()
        self.service = build_service(config, interpreter=self.interpreter, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_earlier_turns_are_passed_to_the_interpreter(self) -> None:
        self.service.handle(
            StructuredCommand("create", {"title": "Standup", "start": _at(1).isoformat(), "end": _at(2).isoformat()})
        )
        self.service.handle(FreeText("show today's schedule"))
        self.assertEqual(self.interpreter.contexts[0]["conversation"], [])

        self.service.handle(FreeText("search for standup"))
        conversation = self.interpreter.contexts[1]["conversation"]
        self.assertEqual([turn["role"] for turn in conversation], ["user", "assistant"])
        self.assertEqual(conversation[0]["content"], "show today's schedule")
        self.assertIn("Standup", conversation[1]["content"])

    def test_structured_commands_are_not_recorded(self) -> None:
        self.service.handle(StructuredCommand("stats"))
        self.assertEqual(self.service.conversation_summary()["total"], 0)

    def test_failed_request_records_error_reply(self) -> None:
        with self.assertRaises(AmbiguousInputError):
            self.service.handle(FreeText("purple monkey dishwasher"))
        summary = self.service.conversation_summary()
        self.assertEqual(summary["by_role"]["user"], 1)
        self.assertEqual(summary["by_role"]["assistant"], 1)
        self.assertEqual(summary["recent"][0]["content"], "purple monkey dishwasher")

    def test_summary_truncates_long_turns(self) -> None:
        self.service.history.record_message("user", "x" * 250)
        recent = self.service.conversation_summary()["recent"]
        self.assertEqual(len(recent[0]["content"]), 100)
        self.assertTrue(recent[0]["content"].endswith("..."))

    def test_log_and_clear(self) -> None:
        self.assertEqual(self.service.conversation_log(), "No conversation history.\n")
        self.service.handle(FreeText("show today's schedule"))
        log = self.service.conversation_log()
        self.assertIn("Messages: 2", log)
        self.assertIn("user: show today's schedule", log)

        self.assertEqual(self.service.clear_conversation(), 2)
        self.assertEqual(self.service.conversation_summary()["total"], 0)


if __name__ == "__main__":
    unittest.main()
