import unittest
from datetime import datetime, timedelta, timezone

from agenda.models import (
    AIConfig,
    AppConfig,
    Event,
    RemoteRef,
    SyncConfig,
    next_revision,
    sync_window,
)


class ModelsTests(unittest.TestCase):
    def test_ai_config_defaults_openai_base_url(self) -> None:
        cfg = AIConfig.from_dict({})
        self.assertEqual(cfg.base_url, "https://api.openai.com/v1")
        self.assertEqual(cfg.model, "gpt-4o-mini")
        self.assertFalse(cfg.mock)

    def test_sync_config_clamps_values(self) -> None:
        cfg = SyncConfig.from_dict({"interval_seconds": 5, "max_attempts": 0, "lookback_days": -3})
        self.assertEqual(cfg.interval_seconds, 30)
        self.assertEqual(cfg.max_attempts, 1)
        self.assertEqual(cfg.lookback_days, 0)

    def test_app_config_round_trips_through_dict(self) -> None:
        cfg = AppConfig.from_dict({"storage": {"backup_retention": 3}, "log_level": "debug"})
        again = AppConfig.from_dict(cfg.to_dict())
        self.assertEqual(again.storage.backup_retention, 3)
        self.assertEqual(again.log_level, "DEBUG")

    def test_event_unknown_fields_survive_round_trip(self) -> None:
        payload = {
            "id": "evt-1",
            "title": "Dentist",
            "start": "2024-01-15T14:00:00Z",
            "end": "2024-01-15T15:00:00Z",
            "tags": ["health", "health", " "],
            "priority": "URGENT",
            "remote_ref": {"remote_id": "r-1", "etag": "e-1"},
            "color": "blue",
        }
        event = Event.from_dict(payload)
        self.assertEqual(event.tags, frozenset({"health"}))
        self.assertEqual(event.priority, "urgent")
        self.assertEqual(event.remote_ref, RemoteRef("r-1", "e-1"))
        self.assertEqual(event.to_dict()["color"], "blue")

    def test_event_legacy_deleted_flag_maps_to_tombstone(self) -> None:
        event = Event.from_dict(
            {"id": "x", "title": "t", "start": "2024-01-01T10:00:00+00:00", "end": "2024-01-01T11:00:00+00:00", "deleted": True}
        )
        self.assertTrue(event.deleted)

    def test_event_from_dict_requires_times(self) -> None:
        with self.assertRaises(ValueError):
            Event.from_dict({"id": "x", "title": "t"})

    def test_event_from_dict_rejects_wrong_types(self) -> None:
        base = {"id": "x", "title": "t", "start": "2024-01-01T10:00:00+00:00", "end": "2024-01-01T11:00:00+00:00"}
        for key, value in (("tags", 5), ("start", 12345), ("attendees", "bob"), ("remote_ref", "r-1")):
            with self.subTest(key=key):
                with self.assertRaises(ValueError):
                    Event.from_dict({**base, key: value})

    def test_created_at_survives_round_trip_and_defaults_to_revision(self) -> None:
        base = {"id": "x", "title": "t", "start": "2024-01-01T10:00:00+00:00", "end": "2024-01-01T11:00:00+00:00"}
        legacy = Event.from_dict({**base, "updated_at": "2024-01-02T08:00:00+00:00"})
        self.assertEqual(legacy.created_at, legacy.updated_at)

        event = Event.from_dict({**legacy.to_dict(), "created_at": "2023-12-31T08:00:00+00:00"})
        self.assertEqual(event.to_dict()["created_at"], "2023-12-31T08:00:00+00:00")
        self.assertEqual(event.clone().created_at, event.created_at)

    def test_content_key_ignores_offset_representation(self) -> None:
        utc_start = datetime(2024, 1, 15, 14, tzinfo=timezone.utc)
        plus_two = timezone(timedelta(hours=2))
        a = Event(id="a", title="Dentist ", start=utc_start, end=utc_start + timedelta(hours=1))
        b = Event(
            id="b",
            title="dentist",
            start=utc_start.astimezone(plus_two),
            end=(utc_start + timedelta(hours=1)).astimezone(plus_two),
        )
        self.assertEqual(a.content_key(), b.content_key())

    def test_next_revision_is_strictly_increasing(self) -> None:
        previous = datetime(2030, 1, 1, tzinfo=timezone.utc)
        revision = next_revision(previous, now=datetime(2020, 1, 1, tzinfo=timezone.utc))
        self.assertGreater(revision, previous)

    def test_sync_window_covers_lookback_and_lookahead(self) -> None:
        now = datetime(2024, 1, 15, 12, tzinfo=timezone.utc)
        start, end = sync_window(now, lookback_days=7, lookahead_days=30)
        self.assertEqual(start, datetime(2024, 1, 8, tzinfo=timezone.utc))
        self.assertEqual(end.date().isoformat(), "2024-02-14")


if __name__ == "__main__":
    unittest.main()
