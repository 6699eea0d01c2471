import pytest

from meshplane.model import Endpoint, ServiceRef, ServiceSnapshot, SnapshotStatus
from meshplane.overlay import (
    ControlPlaneSnapshotDegradedError,
    ControlPlaneSnapshotUnavailableError,
    Overlay,
)

ORDERS = ServiceRef(service="orders", namespace="default", env="dev")


class FakeProvider:
    def __init__(self, snapshot):
        self.snapshot = snapshot
        self.calls = 0

    @property
    def name(self):
        return "fake"

    async def resolve(self, target):
        self.calls += 1
        return self.snapshot


class FakeSnapshotResolver:
    def __init__(self, snapshot=None):
        self.snapshot = snapshot

    def resolve_snapshot(self, target):
        return self.snapshot


class FakeTrackingResolver:
    def __init__(self, snapshot=None):
        self.snapshot = snapshot
        self.tracked = []

    def resolve_snapshot(self, target):
        return self.snapshot

    def track_target(self, target):
        self.tracked.append(target)


def _snapshot(address, port, status=None):
    endpoints = () if address is None else (Endpoint(address, port, 1),)
    return ServiceSnapshot(service=ORDERS, endpoints=endpoints, status=status)


@pytest.mark.asyncio
async def test_overlay_uses_control_plane_snapshot_first():
    primary = FakeProvider(_snapshot("10.0.0.1", 19090))
    overlay = Overlay(primary, FakeSnapshotResolver(_snapshot("10.0.0.2", 29090)))

    snapshot = await overlay.resolve(ORDERS)

    assert snapshot.endpoints[0].address == "10.0.0.2"
    assert primary.calls == 0


@pytest.mark.asyncio
async def test_overlay_returns_snapshot_unavailable_without_fallback():
    resolver = FakeTrackingResolver()
    overlay = Overlay(None, resolver, False)

    with pytest.raises(ControlPlaneSnapshotUnavailableError):
        await overlay.resolve(ORDERS)

    assert len(resolver.tracked) == 1
    assert resolver.tracked[0].service == "orders"


@pytest.mark.asyncio
async def test_overlay_falls_back_to_primary_when_enabled():
    overlay = Overlay(
        FakeProvider(_snapshot("10.0.0.3", 39090)), FakeSnapshotResolver(), True
    )

    snapshot = await overlay.resolve(ORDERS)

    assert snapshot.endpoints[0].address == "10.0.0.3"


@pytest.mark.asyncio
async def test_overlay_returns_degraded_error_without_fallback():
    overlay = Overlay(
        None,
        FakeSnapshotResolver(_snapshot(None, 0, SnapshotStatus.DEGRADED)),
        False,
    )

    with pytest.raises(ControlPlaneSnapshotDegradedError):
        await overlay.resolve(ORDERS)


@pytest.mark.asyncio
async def test_overlay_falls_back_when_control_plane_snapshot_is_degraded():
    overlay = Overlay(
        FakeProvider(_snapshot("10.0.0.9", 39090)),
        FakeSnapshotResolver(_snapshot(None, 0, SnapshotStatus.DEGRADED)),
        True,
    )

    snapshot = await overlay.resolve(ORDERS)

    assert snapshot.endpoints[0].address == "10.0.0.9"


@pytest.mark.asyncio
async def test_overlay_tracks_target_before_falling_back():
    resolver = FakeTrackingResolver()
    overlay = Overlay(FakeProvider(_snapshot("10.0.0.4", 19090)), resolver)

    snapshot = await overlay.resolve(ORDERS)

    assert snapshot.endpoints[0].address == "10.0.0.4"
    assert resolver.tracked == [ORDERS]


@pytest.mark.asyncio
async def test_overlay_without_priority_uses_primary():
    overlay = Overlay(FakeProvider(_snapshot("10.0.0.5", 19090)), None)

    snapshot = await overlay.resolve(ORDERS)

    assert snapshot.endpoints[0].address == "10.0.0.5"


def test_overlay_names():
    primary = FakeProvider(_snapshot("10.0.0.1", 1))
    assert Overlay(primary, None).name == "overlay(fake)"
    assert Overlay(None, None).name == "overlay"
    assert Overlay(primary, None, False).name == "controlplane-primary"