"""Turns a logical service target into one endpoint."""

from __future__ import annotations

from meshplane.balancer import Picker
from meshplane.model import Endpoint, Provider, ServiceRef, SnapshotStatus


class SnapshotDegradedError(Exception):
    """The service snapshot is degraded and must not be used for routing."""

    BASE_MESSAGE = "service snapshot degraded"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.BASE_MESSAGE)


class SnapshotStatusError(SnapshotDegradedError):
    """A degraded snapshot, with the target, status and reason it carried."""

    def __init__(
        self,
        target: ServiceRef | None = None,
        status: str = "",
        reason: str = "",
    ) -> None:
        self.target = target
        self.status = str(status) if status else ""
        self.reason = reason
        parts = [self.BASE_MESSAGE]
        if target is not None and target.service.strip():
            parts.append(f"service={target.service}")
        if self.status.strip():
            parts.append(f"status={self.status}")
        if reason.strip():
            parts.append(f"reason={reason}")
        super().__init__(" ".join(parts))


class Resolver:
    """Fetches a snapshot from a provider and lets a picker choose the endpoint."""

    def __init__(self, provider: Provider, picker: Picker) -> None:
        self._provider = provider
        self._picker = picker

    async def resolve(self, target: ServiceRef) -> Endpoint:
        snapshot = await self._provider.resolve(target)
        if snapshot.status == SnapshotStatus.DEGRADED:
            raise SnapshotStatusError(target, snapshot.status, snapshot.status_reason)
        return self._picker.pick(snapshot)