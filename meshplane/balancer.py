"""Endpoint selection strategies."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Protocol, runtime_checkable

from meshplane.model import Endpoint, ServiceSnapshot, service_key


class NoEndpointsError(Exception):
    """A snapshot holds no endpoints to pick from."""

    def __init__(self) -> None:
        super().__init__("no endpoints available")


@runtime_checkable
class Picker(Protocol):
    """Chooses one endpoint of a snapshot."""

    def pick(self, snapshot: ServiceSnapshot) -> Endpoint: ...


class RoundRobin:
    """Cycles through endpoints, with an independent cursor per service."""

    def __init__(self) -> None:
        self._cursors: defaultdict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def pick(self, snapshot: ServiceSnapshot) -> Endpoint:
        if not snapshot.endpoints:
            raise NoEndpointsError()
        key = service_key(snapshot.service)
        with self._lock:
            index = self._cursors[key] % len(snapshot.endpoints)
            self._cursors[key] += 1
        return snapshot.endpoints[index]