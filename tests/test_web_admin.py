import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from agenda.web_admin import create_app


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        env = mock.patch.dict(
            os.environ,
            {
                "AGENDA_CONFIG_PATH": self.config_path,
                "AGENDA_DATA_DIR": str(Path(self.temp_dir.name) / "data"),
                "AGENDA_AI_API_KEY": "",
                "AGENDA_CALDAV_PASSWORD": "",
            },
        )
        env.start()
        self.addCleanup(env.stop)
        self.client = TestClient(create_app())
        self.start = (datetime.now(timezone.utc) + timedelta(days=2)).replace(microsecond=0)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _create(self, title: str, offset_hours: int = 0, **extra: object) -> dict:
        start = self.start + timedelta(hours=offset_hours)
        payload = {"title": title, "start": _iso(start), "end": _iso(start + timedelta(hours=1)), **extra}
        resp = self.client.post("/api/events", json=payload)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def test_healthz(self) -> None:
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_config_secrets_are_masked_and_preserved(self) -> None:
        seed = {"caldav": {"base_url": "https://dav.example.com", "password": "secret-pass"}, "ai": {"api_key": "k"}}
        resp = self.client.put("/api/config", json={"payload": seed})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["caldav"]["password"], "***")

        resp = self.client.put("/api/config", json={"payload": {"caldav": {"password": "***", "username": "u"}}})
        self.assertEqual(resp.status_code, 200)
        with open(self.config_path, encoding="utf-8") as handle:
            raw = handle.read()
        self.assertIn("secret-pass", raw)
        self.assertEqual(self.client.get("/api/config").json()["ai"]["api_key"], "***")

    def test_event_crud(self) -> None:
        created = self._create("Dentist", tags=["health"], priority="high")
        event_id = created["event"]["id"]
        self.assertEqual(created["event"]["priority"], "high")

        self.assertEqual(self.client.get(f"/api/events/{event_id}").json()["event"]["title"], "Dentist")

        resp = self.client.patch(f"/api/events/{event_id}", json={"location": "Main St"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["event"]["location"], "Main St")

        resp = self.client.get("/api/events/search", params={"q": "dent"})
        self.assertEqual([item["id"] for item in resp.json()["events"]], [event_id])

        resp = self.client.get("/api/events", params={"tag": "health"})
        self.assertEqual(len(resp.json()["events"]), 1)

        resp = self.client.delete(f"/api/events/{event_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get(f"/api/events/{event_id}").status_code, 404)
        self.assertEqual(self.client.post("/api/compact").json()["purged"], 1)

    def test_error_categories_map_to_status_codes(self) -> None:
        resp = self.client.post(
            "/api/events",
            json={"title": "Backwards", "start": _iso(self.start), "end": _iso(self.start - timedelta(hours=1))},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["category"], "invalid_args")

        self.assertEqual(self.client.post("/api/events", json={"title": "No times"}).status_code, 422)

        event_id = self._create("Review")["event"]["id"]
        resp = self.client.patch(f"/api/events/{event_id}", json={"end": _iso(self.start - timedelta(hours=1))})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"]["category"], "validation")

        resp = self.client.delete("/api/events/evt-missing")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"]["event_id"], "evt-missing")

    def test_overlap_warning_in_response(self) -> None:
        first = self._create("Review")["event"]["id"]
        second = self._create("Lunch")
        self.assertEqual([item["id"] for item in second["warnings"]], [first])

    def test_interpret(self) -> None:
        self._create("Standup")
        resp = self.client.post("/api/interpret", json={"text": "search for standup"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["kind"], "query")
        self.assertEqual(len(resp.json()["events"]), 1)

        resp = self.client.post("/api/interpret", json={"text": "purple monkey dishwasher"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["category"], "ambiguous")

    def test_conversation_summary_log_and_clear(self) -> None:
        self._create("Standup")
        self.client.post("/api/interpret", json={"text": "search for standup"})

        summary = self.client.get("/api/conversation").json()
        self.assertEqual(summary["total"], 2)
        self.assertEqual(summary["recent"][0]["content"], "search for standup")

        resp = self.client.get("/api/conversation/log")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("text/plain"))
        self.assertIn("conversation_log_", resp.headers["content-disposition"])
        self.assertIn("user: search for standup", resp.text)

        self.assertEqual(self.client.delete("/api/conversation").json(), {"cleared": 2})
        self.assertEqual(self.client.get("/api/conversation").json()["total"], 0)

    def test_stats_and_free_slots(self) -> None:
        self._create("Busy", tags=["work"])
        stats = self.client.get("/api/stats").json()["stats"]
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["by_tag"], {"work": 1})

        resp = self.client.get("/api/free", params={"duration_minutes": 30, "horizon_days": 3})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(all(slot["minutes"] >= 30 for slot in resp.json()["slots"]))
        self.assertEqual(self.client.get("/api/free", params={"duration_minutes": 0}).status_code, 422)

    def test_backup_and_restore(self) -> None:
        kept = self._create("Kept")["event"]["id"]
        resp = self.client.post("/api/backups", json={"reason": "before cleanup"})
        self.assertEqual(resp.status_code, 201)
        snapshot_id = resp.json()["snapshot_id"]
        later = self._create("Later", offset_hours=3)["event"]["id"]

        resp = self.client.post(f"/api/backups/{snapshot_id}/restore")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get(f"/api/events/{kept}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/events/{later}").status_code, 404)

        reasons = [item["reason"] for item in self.client.get("/api/backups").json()["backups"]]
        self.assertIn("before cleanup", reasons)
        self.assertEqual(self.client.post("/api/backups/snap-999999/restore").status_code, 400)

    def test_export_then_import(self) -> None:
        self._create("Dentist")
        resp = self.client.get("/api/export", params={"format": "json"})
        self.assertEqual(resp.status_code, 200)
        self.assertIn("attachment", resp.headers["content-disposition"])
        exported = resp.text

        resp = self.client.post("/api/import", json={"content": exported, "format": "json"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["replaced"], 1)

        ics = self.client.get("/api/export", params={"format": "ics"})
        self.assertTrue(ics.headers["content-type"].startswith("text/calendar"))
        resp = self.client.post("/api/import", json={"content": "not json", "format": "json"})
        self.assertEqual(resp.status_code, 422)

    def test_import_with_wrong_field_types_is_rejected(self) -> None:
        start, end = _iso(self.start), _iso(self.start + timedelta(hours=1))
        for event in ({"title": "x", "start": start, "end": end, "tags": 5}, {"title": "x", "start": 12345, "end": end}):
            with self.subTest(event=event):
                resp = self.client.post("/api/import", json={"content": json.dumps([event]), "format": "json"})
                self.assertEqual(resp.status_code, 422)
                self.assertEqual(resp.json()["error"]["category"], "validation")

    def test_sync_endpoints_without_remote(self) -> None:
        self.assertEqual(self.client.post("/api/sync/run").status_code, 409)
        resp = self.client.post("/api/sync/run-now")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["status"], "skipped")
        self.assertEqual(self.client.get("/api/sync/status").json(), {"runs": []})
        self.assertEqual(self.client.get("/api/debug/runs/1").status_code, 404)

    def test_ai_test_with_mock_interpreter(self) -> None:
        resp = self.client.post("/api/ai/test")
        self.assertEqual(resp.json(), {"ok": True, "message": "Mock interpreter in use."})


if __name__ == "__main__":
    unittest.main()
