"""A directory source that prefers control-plane snapshots over a primary source."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from meshplane.model import Provider, ServiceRef, ServiceSnapshot, SnapshotStatus


@runtime_checkable
class SnapshotResolver(Protocol):
    """A higher-priority source of snapshots; returns None on a miss."""

    def resolve_snapshot(self, target: ServiceRef) -> ServiceSnapshot | None: ...


@runtime_checkable
class TargetTracker(Protocol):
    """Something that wants to learn which targets were asked for."""

    def track_target(self, target: ServiceRef) -> None: ...


class ControlPlaneSnapshotUnavailableError(LookupError):
    """No control-plane snapshot is available for the target yet."""

    def __init__(self) -> None:
        super().__init__("controlplane snapshot unavailable")


class ControlPlaneSnapshotDegradedError(Exception):
    """The control-plane snapshot is degraded and must not be used."""

    def __init__(self) -> None:
        super().__init__("controlplane snapshot degraded")


class Overlay:
    """Resolve from the control plane first, falling back to a primary source."""

    def __init__(
        self,
        primary: Provider | None,
        priority: SnapshotResolver | None,
        allow_primary_fallback: bool = True,
    ) -> None:
        self._primary = primary
        self._priority = priority
        self._allow_primary_fallback = allow_primary_fallback

    @property
    def name(self) -> str:
        if not self._allow_primary_fallback:
            return "controlplane-primary"
        if self._primary is None:
            return "overlay"
        return f"overlay({self._primary.name})"

    @property
    def _can_fall_back(self) -> bool:
        return self._allow_primary_fallback and self._primary is not None

    async def resolve(self, target: ServiceRef) -> ServiceSnapshot:
        if self._priority is not None:
            snapshot = self._priority.resolve_snapshot(target)
            if snapshot is not None:
                if snapshot.status == SnapshotStatus.DEGRADED:
                    if self._can_fall_back:
                        return await self._primary.resolve(target)
                    raise ControlPlaneSnapshotDegradedError()
                return snapshot
            if isinstance(self._priority, TargetTracker):
                self._priority.track_target(target)

        if not self._can_fall_back:
            raise ControlPlaneSnapshotUnavailableError()
        return await self._primary.resolve(target)