"""An in-memory directory source with push-style watches."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Mapping

from meshplane.model import ServiceRef, ServiceSnapshot, service_key
from meshplane.watch import EventKind, WatchEvent, WatchStream


class SnapshotNotFoundError(LookupError):
    """No snapshot is stored for the requested target."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"service snapshot not found: {key}")


class MemoryProvider:
    """A directory source backed by a dictionary of snapshots.

    Watch streams are fed synchronously; use one event loop per provider.
    """

    def __init__(self, snapshots: Mapping[str, ServiceSnapshot] | None = None) -> None:
        self._snapshots: dict[str, ServiceSnapshot] = dict(snapshots or {})
        self._watchers: dict[str, dict[int, WatchStream]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "memory"

    async def resolve(self, target: ServiceRef) -> ServiceSnapshot:
        """Return the stored snapshot for the target."""
        key = service_key(target)
        with self._lock:
            snapshot = self._snapshots.get(key)
        if snapshot is None:
            raise SnapshotNotFoundError(key)
        return snapshot

    def watch(self, target: ServiceRef) -> WatchStream:
        """Open a stream of upsert and delete events for the target."""
        key = service_key(target)
        with self._lock:
            watch_id = next(self._ids)
            stream = WatchStream(on_close=lambda: self._unregister(key, watch_id))
            self._watchers.setdefault(key, {})[watch_id] = stream
        return stream

    def upsert(self, snapshot: ServiceSnapshot) -> None:
        """Store a snapshot and notify the watchers of its service."""
        key = service_key(snapshot.service)
        with self._lock:
            self._snapshots[key] = snapshot
            watchers = list(self._watchers.get(key, {}).values())
        event = WatchEvent(EventKind.UPSERT, snapshot.service, snapshot)
        for stream in watchers:
            stream.publish(event)

    def delete(self, target: ServiceRef) -> None:
        """Remove a snapshot and notify the watchers of its service."""
        key = service_key(target)
        with self._lock:
            self._snapshots.pop(key, None)
            watchers = list(self._watchers.get(key, {}).values())
        event = WatchEvent(EventKind.DELETE, target)
        for stream in watchers:
            stream.publish(event)

    def _unregister(self, key: str, watch_id: int) -> None:
        with self._lock:
            watchers = self._watchers.get(key)
            if watchers is None:
                return
            watchers.pop(watch_id, None)
            if not watchers:
                del self._watchers[key]