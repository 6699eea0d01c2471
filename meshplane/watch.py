"""Watch events, event streams and the polling watch runner."""

from __future__ import annotations

import asyncio
import dataclasses
import enum
from collections import deque
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass

from meshplane.model import ServiceRef, ServiceSnapshot, SnapshotStatus

DEFAULT_BUFFER_SIZE = 8
DEFAULT_INTERVAL = 1.0
DEFAULT_DEGRADE_AFTER_CONSECUTIVE_ERRORS = 3

ERROR_CLASS_NOT_FOUND = "not_found"
ERROR_CLASS_EMPTY = "empty"
ERROR_CLASS_TIMEOUT = "timeout"
ERROR_CLASS_UNAVAILABLE = "unavailable"
ERROR_CLASS_INTERNAL = "internal"

PollFunc = Callable[[], Awaitable["ServiceSnapshot | None"]]


class NoHealthyEndpointsError(Exception):
    """A service was found but has no healthy instances."""

    BASE_MESSAGE = "no healthy source endpoints"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        message = f"{self.BASE_MESSAGE}: {detail}" if detail else self.BASE_MESSAGE
        super().__init__(message)


class EventKind(enum.StrEnum):
    """Whether a watch event carries a snapshot or removes one."""

    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class WatchEvent:
    """One change reported by a directory source."""

    kind: EventKind
    target: ServiceRef
    snapshot: ServiceSnapshot | None = None


class WatchStream:
    """A bounded stream of watch events; events that do not fit are dropped."""

    def __init__(
        self,
        capacity: int = DEFAULT_BUFFER_SIZE,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._events: deque[WatchEvent] = deque()
        self._capacity = capacity
        self._closed = False
        self._ready = asyncio.Event()
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: WatchEvent) -> bool:
        """Queue an event; return False when the stream is closed or full."""
        if self._closed or len(self._events) >= self._capacity:
            return False
        self._events.append(event)
        self._ready.set()
        return True

    async def get(self) -> WatchEvent | None:
        """Wait for the next event; return None once closed and drained."""
        while True:
            if self._events:
                return self._events.popleft()
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()

    def close(self) -> None:
        """Close the stream; closing twice has no further effect."""
        if self._closed:
            return
        self._closed = True
        self._ready.set()
        callback, self._on_close = self._on_close, None
        if callback is not None:
            callback()

    def __aiter__(self) -> WatchStream:
        return self

    async def __anext__(self) -> WatchEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> WatchStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass(frozen=True)
class PollingOptions:
    """Parameters of the polling watch runner."""

    degrade_after_consecutive_errors: int = 0


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def run_polling(
    target: ServiceRef,
    poll: PollFunc,
    interval: float = DEFAULT_INTERVAL,
    options: PollingOptions | None = None,
) -> WatchStream:
    """Poll a source periodically and turn the results into watch events.

    ``poll`` returns the current snapshot, or None when the target no longer
    exists, and raises on failure. Must be called with a running event loop;
    closing the returned stream stops polling.
    """
    if interval <= 0:
        interval = DEFAULT_INTERVAL
    degrade_after = options.degrade_after_consecutive_errors if options else 0
    if degrade_after <= 0:
        degrade_after = DEFAULT_DEGRADE_AFTER_CONSECUTIVE_ERRORS

    task: asyncio.Task | None = None

    def stop() -> None:
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    stream = WatchStream(on_close=stop)
    task = asyncio.get_running_loop().create_task(
        _poll_loop(stream, target, poll, interval, degrade_after)
    )
    return stream


async def _poll_loop(
    stream: WatchStream,
    target: ServiceRef,
    poll: PollFunc,
    interval: float,
    degrade_after: int,
) -> None:
    current: ServiceSnapshot | None = None
    emitted: ServiceSnapshot | None = None
    consecutive_errors = 0

    def emit(snapshot: ServiceSnapshot) -> None:
        nonlocal emitted
        if emitted != snapshot:
            emitted = snapshot
            stream.publish(WatchEvent(EventKind.UPSERT, snapshot.service, snapshot))

    try:
        while True:
            try:
                snapshot = await poll()
            except Exception as err:  # noqa: BLE001 - every poll failure is reported
                consecutive_errors += 1
                reason = format_polling_error_reason(err)
                if consecutive_errors >= degrade_after:
                    base = current if current is not None else ServiceSnapshot(service=target)
                    emit(
                        dataclasses.replace(
                            base, status=SnapshotStatus.DEGRADED, status_reason=reason
                        )
                    )
                elif current is not None:
                    emit(
                        dataclasses.replace(
                            current, status=SnapshotStatus.STALE, status_reason=reason
                        )
                    )
            else:
                consecutive_errors = 0
                if snapshot is None:
                    if emitted is not None:
                        current = None
                        emitted = None
                        stream.publish(WatchEvent(EventKind.DELETE, target))
                else:
                    current = snapshot
                    emit(
                        dataclasses.replace(
                            snapshot,
                            status=snapshot.status or SnapshotStatus.CURRENT,
                            status_reason="",
                        )
                    )
            await asyncio.sleep(interval)
    finally:
        stream.close()


def _error_chain(err: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def format_polling_error_reason(err: BaseException | None) -> str:
    """Format an error as the reason attached to stale or degraded snapshots."""
    if err is None:
        return ""
    message = str(err).strip() or type(err).__name__
    return f"class={classify_polling_error(err)} error={message}"


def classify_polling_error(err: BaseException | None) -> str:
    """Reduce a provider error to one of a few reason classes."""
    if err is None:
        return ERROR_CLASS_INTERNAL
    chain = list(_error_chain(err))
    if any(isinstance(e, TimeoutError) for e in chain):
        return ERROR_CLASS_TIMEOUT
    if any(isinstance(e, asyncio.CancelledError) for e in chain):
        return ERROR_CLASS_UNAVAILABLE
    if any(isinstance(e, NoHealthyEndpointsError) for e in chain):
        return ERROR_CLASS_EMPTY
    return ERROR_CLASS_UNAVAILABLE