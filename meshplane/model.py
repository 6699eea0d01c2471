"""Service-discovery data types shared by sources, resolvers and balancers."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


class SnapshotStatus(enum.StrEnum):
    """Freshness of a service snapshot."""

    CURRENT = "current"
    STALE = "stale"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ServiceRef:
    """A logical service target."""

    service: str
    namespace: str = ""
    env: str = ""
    port: int = 0


@dataclass(frozen=True)
class Endpoint:
    """One routable instance of a service."""

    address: str
    port: int
    weight: int = 0


@dataclass(frozen=True)
class ServiceSnapshot:
    """The instances known for a service at one point in time."""

    service: ServiceRef
    endpoints: tuple[Endpoint, ...] = ()
    revision: str = ""
    status: SnapshotStatus | None = None
    status_reason: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.endpoints, tuple):
            object.__setattr__(self, "endpoints", tuple(self.endpoints))


@runtime_checkable
class Provider(Protocol):
    """A directory source that resolves service snapshots."""

    @property
    def name(self) -> str: ...

    async def resolve(self, target: ServiceRef) -> ServiceSnapshot: ...


def service_key(target: ServiceRef) -> str:
    """Return the namespace/env/service key used to index a target."""
    return f"{target.namespace}/{target.env}/{target.service}"