from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator

from agenda.errors import RestoreError, ValidationError
from agenda.event_store import EventStore
from agenda.models import Event, Snapshot, SyncState, utc_now

logger = logging.getLogger(__name__)


class BackupManager:
    def __init__(
        self,
        store: EventStore,
        retention: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.retention = max(1, retention)
        self.clock = clock

    def snapshot(self, reason: str) -> str:
        snapshot = self.store.add_snapshot(reason, now=self.clock())
        logger.info("Snapshot %s taken (%s, %d events)", snapshot.snapshot_id, reason, len(snapshot.events))
        self.prune(self.retention)
        return snapshot.snapshot_id

    @contextmanager
    def checkpoint(self, reason: str) -> Iterator[str]:
        """Snapshot before the body runs; the snapshot stays whatever the body does."""
        snapshot_id = self.snapshot(reason)
        try:
            yield snapshot_id
        except Exception:
            logger.warning("Operation guarded by snapshot %s failed; restore it to roll back", snapshot_id)
            raise

    def list_snapshots(self) -> list[Snapshot]:
        return sorted(self.store.snapshots(), key=lambda s: s.snapshot_id, reverse=True)

    def get(self, snapshot_id: str) -> Snapshot:
        snapshot = self.store.get_snapshot(snapshot_id)
        if snapshot is None:
            raise RestoreError(f"Snapshot {snapshot_id} not found.", operation="restore")
        return snapshot

    def restore(self, snapshot_id: str) -> str:
        """Replace the store with ``snapshot_id``; returns the snapshot taken just before."""
        snapshot = self.get(snapshot_id)
        try:
            events = [Event.from_dict(item) for item in snapshot.events]
            sync_states = [SyncState.from_dict(item) for item in snapshot.sync_states]
        except (KeyError, ValueError) as exc:
            raise RestoreError(f"Snapshot {snapshot_id} is unreadable: {exc}", operation="restore") from exc
        safety_id = self.store.add_snapshot(f"before restore of {snapshot_id}", now=self.clock()).snapshot_id
        try:
            with self.store.transaction() as tx:
                tx.replace_contents(events, sync_states)
        except ValidationError as exc:
            raise RestoreError(f"Snapshot {snapshot_id} holds invalid events: {exc.message}", operation="restore") from exc
        logger.info("Restored snapshot %s (safety snapshot %s)", snapshot_id, safety_id)
        self.prune(self.retention, keep={safety_id})
        return safety_id

    def prune(self, keep_n: int, keep: set[str] | None = None) -> int:
        keep_n = max(1, keep_n)
        ordered = self.list_snapshots()
        retained = {s.snapshot_id for s in ordered[:keep_n]} | (keep or set())
        stale = {s.snapshot_id for s in ordered if s.snapshot_id not in retained}
        if not stale:
            return 0
        removed = self.store.remove_snapshots(stale)
        logger.debug("Pruned %d snapshots", removed)
        return removed
