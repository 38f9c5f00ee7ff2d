from __future__ import annotations

from typing import Any


class AgendaError(Exception):
    category = "error"

    def __init__(self, message: str, *, operation: str = "", event_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.event_id = event_id

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "category": self.category,
            "message": self.message,
            "operation": self.operation,
        }
        if self.event_id:
            payload["event_id"] = self.event_id
        return payload


class ValidationError(AgendaError):
    category = "validation"


class NotFoundError(AgendaError):
    category = "not_found"


class StorageError(AgendaError):
    category = "storage"


class InterpretError(AgendaError):
    category = "interpret"


class ResolveError(AgendaError):
    category = "resolve"


class InvalidArgsError(ResolveError):
    category = "invalid_args"


class AmbiguousInputError(ResolveError):
    category = "ambiguous"


class CancelledError(AgendaError):
    category = "cancelled"


class RestoreError(AgendaError):
    category = "restore"


class SyncError(AgendaError):
    category = "sync"

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        applied: int = 0,
        planned: int = 0,
        operation: str = "sync",
        event_id: str | None = None,
    ) -> None:
        super().__init__(message, operation=operation, event_id=event_id)
        self.stage = stage
        self.applied = applied
        self.planned = planned

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"stage": self.stage, "applied": self.applied, "planned": self.planned})
        return payload


class StaleRemoteError(SyncError):
    category = "stale_remote"


# Raised by Remote Calendar implementations.


class RemoteError(Exception):
    pass


class RemoteNotFoundError(RemoteError):
    pass


class StaleRevisionError(RemoteError):
    def __init__(self, remote_id: str, expected: str, actual: str) -> None:
        super().__init__(f"Remote event {remote_id} is at revision {actual}, expected {expected}.")
        self.remote_id = remote_id
        self.expected = expected
        self.actual = actual


class TransientRemoteError(RemoteError):
    pass
