import asyncio

import pytest

from meshplane.memory import MemoryProvider, SnapshotNotFoundError
from meshplane.model import Endpoint, ServiceRef, ServiceSnapshot
from meshplane.watch import EventKind

TARGET = ServiceRef(service="orders", namespace="default", env="dev")
SNAPSHOT = ServiceSnapshot(service=TARGET, endpoints=[Endpoint("10.0.0.10", 19090, 1)])


async def next_event(stream, timeout=1.0):
    return await asyncio.wait_for(stream.get(), timeout)


@pytest.mark.asyncio
async def test_watch_receives_upsert_and_delete():
    provider = MemoryProvider()
    with provider.watch(TARGET) as stream:
        provider.upsert(SNAPSHOT)
        event = await next_event(stream)
        assert event.kind is EventKind.UPSERT
        assert event.snapshot.endpoints[0].address == "10.0.0.10"

        provider.delete(TARGET)
        event = await next_event(stream)
        assert event.kind is EventKind.DELETE
        assert event.target.service == "orders"


@pytest.mark.asyncio
async def test_resolve_missing_raises_with_key():
    provider = MemoryProvider()
    with pytest.raises(SnapshotNotFoundError) as info:
        await provider.resolve(TARGET)
    assert info.value.key == "default/dev/orders"
    assert "default/dev/orders" in str(info.value)


@pytest.mark.asyncio
async def test_resolve_returns_upserted_then_fails_after_delete():
    provider = MemoryProvider()
    provider.upsert(SNAPSHOT)
    assert await provider.resolve(TARGET) == SNAPSHOT
    provider.delete(TARGET)
    with pytest.raises(SnapshotNotFoundError):
        await provider.resolve(TARGET)


@pytest.mark.asyncio
async def test_constructor_copies_input_mapping():
    initial = {"default/dev/orders": SNAPSHOT}
    provider = MemoryProvider(initial)
    initial.clear()
    assert await provider.resolve(TARGET) == SNAPSHOT


@pytest.mark.asyncio
async def test_closed_stream_receives_nothing():
    provider = MemoryProvider()
    stream = provider.watch(TARGET)
    stream.close()
    provider.upsert(SNAPSHOT)
    assert await next_event(stream) is None


@pytest.mark.asyncio
async def test_watch_only_sees_its_own_target():
    provider = MemoryProvider()
    other = ServiceRef(service="users", namespace="default", env="dev")
    with provider.watch(TARGET) as stream:
        provider.upsert(ServiceSnapshot(service=other))
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(stream.get(), 0.05)


@pytest.mark.asyncio
async def test_every_watcher_gets_the_event():
    provider = MemoryProvider()
    with provider.watch(TARGET) as first, provider.watch(TARGET) as second:
        provider.upsert(SNAPSHOT)
        assert (await next_event(first)).snapshot == SNAPSHOT
        assert (await next_event(second)).snapshot == SNAPSHOT


def test_name():
    assert MemoryProvider().name == "memory"