from __future__ import annotations

import logging
import os
import threading
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from agenda.config_manager import ConfigManager
from agenda.errors import AgendaError
from agenda.models import serialize_datetime
from agenda.operations import Backup, FreeText, Restore, StructuredCommand
from agenda.scheduler import SyncScheduler
from agenda.service import OperationResult, ScheduleService, build_service
from agenda.sync_engine import failure_error

logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    "validation": 422,
    "invalid_args": 400,
    "ambiguous": 400,
    "resolve": 400,
    "interpret": 422,
    "cancelled": 409,
    "not_found": 404,
    "restore": 400,
    "stale_remote": 409,
    "sync": 502,
    "storage": 500,
}
EXPORT_MEDIA_TYPES = {"json": "application/json", "ics": "text/calendar"}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EventCreateRequest(BaseModel):
    title: str
    start: str
    end: str
    description: str | None = None
    location: str | None = None
    tags: list[str] | None = None
    priority: str | None = None
    attendees: list[str] | None = None


class EventUpdateRequest(BaseModel):
    title: str | None = None
    start: str | None = None
    end: str | None = None
    description: str | None = None
    location: str | None = None
    tags: list[str] | None = None
    priority: str | None = None
    attendees: list[str] | None = None


class InterpretRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class BackupRequest(BaseModel):
    reason: str = "manual"


class ImportRequest(BaseModel):
    content: str
    format: Literal["json", "ics"] = "json"


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.service: ScheduleService = build_service(config)
        self.scheduler = SyncScheduler(self.service, interval_seconds=config.sync.interval_seconds)
        # Cancels in-flight free-text interpretation when the app shuts down.
        self.cancel_event = threading.Event()


def _result_response(result: OperationResult, status_code: int = 200) -> JSONResponse:
    if result.status == "queued":
        status_code = 202
    return JSONResponse(status_code=status_code, content=result.to_dict())


def _free_slot(start: Any, end: Any) -> dict[str, Any]:
    return {
        "start": serialize_datetime(start),
        "end": serialize_datetime(end),
        "minutes": int((end - start).total_seconds() // 60),
    }


def create_app() -> FastAPI:
    config_path = os.getenv("AGENDA_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)

    app = FastAPI(title="Agenda", version="0.1.0")
    app.state.context = context

    @app.exception_handler(AgendaError)
    async def _agenda_error(_: Request, exc: AgendaError) -> JSONResponse:
        status_code = STATUS_BY_CATEGORY.get(exc.category, 400)
        if status_code >= 500:
            logger.error("%s failed: %s", exc.operation or "request", exc.message)
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.cancel_event.set()
        app.state.context.scheduler.stop()

    def service() -> ScheduleService:
        return app.state.context.service

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    # Configuration

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        masked = app.state.context.config_manager.masked()
        return {
            "message": "config updated; restart to apply storage and remote settings",
            "config": masked,
            "log_level": updated.log_level,
        }

    # Events

    @app.get("/api/events")
    def list_events(
        today: bool = False,
        upcoming: bool = False,
        text: str = "",
        tag: str = "",
        start: str | None = None,
        end: str | None = None,
        limit: int | None = None,
    ) -> JSONResponse:
        args = {
            "today": today,
            "upcoming": upcoming,
            "text": text,
            "tag": tag,
            "start": start,
            "end": end,
            "limit": limit,
        }
        return _result_response(service().handle(StructuredCommand(name="list", args=args)))

    @app.get("/api/events/search")
    def search_events(q: str, limit: int | None = None) -> JSONResponse:
        command = StructuredCommand(name="search", args={"query": q, "limit": limit})
        return _result_response(service().handle(command))

    @app.get("/api/events/{event_id}")
    def get_event(event_id: str) -> dict[str, Any]:
        return {"event": service().store.require(event_id).to_dict()}

    @app.post("/api/events")
    def create_event(request: EventCreateRequest) -> JSONResponse:
        command = StructuredCommand(name="create", args=request.model_dump(exclude_none=True))
        return _result_response(service().handle(command), status_code=201)

    @app.patch("/api/events/{event_id}")
    def update_event(event_id: str, request: EventUpdateRequest) -> JSONResponse:
        args = {"id": event_id, **request.model_dump(exclude_none=True)}
        return _result_response(service().handle(StructuredCommand(name="update", args=args)))

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str) -> JSONResponse:
        return _result_response(service().handle(StructuredCommand(name="delete", args={"id": event_id})))

    @app.post("/api/interpret")
    def interpret(request: InterpretRequest) -> JSONResponse:
        result = service().handle(FreeText(text=request.text), cancel_event=app.state.context.cancel_event)
        return _result_response(result)

    @app.get("/api/conversation")
    def conversation() -> dict[str, Any]:
        return service().conversation_summary()

    @app.delete("/api/conversation")
    def clear_conversation() -> dict[str, int]:
        return {"cleared": service().clear_conversation()}

    @app.get("/api/conversation/log")
    def conversation_log() -> Response:
        svc = service()
        filename = f"conversation_log_{svc.clock().strftime('%Y%m%d_%H%M%S')}.txt"
        return Response(
            content=svc.conversation_log(),
            media_type="text/plain",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/api/stats")
    def stats() -> dict[str, Any]:
        return {"stats": service().stats()}

    @app.get("/api/free")
    def find_free(duration_minutes: int = 60, horizon_days: int = 7) -> dict[str, Any]:
        slots = service().find_free(duration_minutes, horizon_days)
        return {
            "duration_minutes": duration_minutes,
            "horizon_days": horizon_days,
            "slots": [_free_slot(start, end) for start, end in slots],
        }

    @app.post("/api/compact")
    def compact() -> dict[str, Any]:
        return service().compact()

    # Backups

    @app.get("/api/backups")
    def list_backups() -> dict[str, Any]:
        snapshots = service().backups.list_snapshots()
        return {"backups": [snapshot.to_dict(include_payload=False) for snapshot in snapshots]}

    @app.post("/api/backups")
    def create_backup(request: BackupRequest) -> JSONResponse:
        return _result_response(service().apply(Backup(reason=request.reason or "manual")), status_code=201)

    @app.post("/api/backups/{snapshot_id}/restore")
    def restore_backup(snapshot_id: str) -> JSONResponse:
        return _result_response(service().apply(Restore(snapshot_id=snapshot_id)))

    # Export / import

    @app.get("/api/export")
    def export(format: Literal["json", "ics"] = "json") -> Response:
        content = service().export(format)
        filename = f"agenda.{format}"
        return Response(
            content=content,
            media_type=EXPORT_MEDIA_TYPES[format],
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/import")
    def import_events(request: ImportRequest) -> dict[str, Any]:
        return service().import_data(request.content, fmt=request.format)

    # Sync

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        if not app.state.context.scheduler.running:
            raise HTTPException(status_code=409, detail="background sync is not running")
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-now")
    def run_sync_now() -> dict[str, Any]:
        report = service().run_sync(trigger="manual")
        if report.status == "failed":
            raise failure_error(report)
        return {"message": "sync completed", "result": report.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20, status: str | None = None) -> dict[str, Any]:
        return {"runs": service().sync_history(limit=limit, status=status)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None, event_id: str | None = None) -> dict[str, Any]:
        return {"events": service().audit_events(limit=limit, run_id=run_id, event_id=event_id)}

    @app.get("/api/debug/runs/{run_id}")
    def debug_run(run_id: int, limit: int = 500) -> dict[str, Any]:
        run = service().sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        return {"run": run, "events": service().audit_events(limit=limit, run_id=run_id)}

    @app.post("/api/ai/test")
    def test_ai_connectivity() -> dict[str, Any]:
        ok, message = service().test_ai()
        return {"ok": ok, "message": message}

    return app
