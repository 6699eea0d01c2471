"""In-process tracing spans and invoke metrics."""

from __future__ import annotations

import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field

from meshplane.messages import InvokeTarget, UnaryInvokeRequest

INVOKE_SPAN_NAME = "service-mesh.invoke"
_HISTORY_LIMIT = 1024


@dataclass
class Span:
    """One traced operation with its attributes, errors and outcome."""

    name: str
    attributes: dict[str, object] = field(default_factory=dict)
    errors: list[BaseException] = field(default_factory=list)
    ok: bool | None = None
    status_description: str = ""
    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None

    @property
    def ended(self) -> bool:
        return self.ended_at is not None

    def record_error(self, err: BaseException) -> None:
        self.errors.append(err)

    def set_status(self, ok: bool, description: str = "") -> None:
        self.ok = ok
        self.status_description = description

    def end(self) -> None:
        """Mark the span finished; later calls keep the first end time."""
        if self.ended_at is None:
            self.ended_at = time.monotonic()

    def __enter__(self) -> Span:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.end()


class Emitter:
    """Creates invoke spans and counts requests, failures, retries and latency."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.requests = 0
        self.failures: Counter[str] = Counter()
        self.retries: Counter[int] = Counter()
        self._latencies_ms: deque[int] = deque(maxlen=_HISTORY_LIMIT)
        self._spans: deque[Span] = deque(maxlen=_HISTORY_LIMIT)

    @property
    def latencies_ms(self) -> list[int]:
        with self._lock:
            return list(self._latencies_ms)

    @property
    def spans(self) -> list[Span]:
        with self._lock:
            return list(self._spans)

    def start_invoke(self, req: UnaryInvokeRequest) -> Span:
        """Open a span describing one local invoke call."""
        target = req.target or InvokeTarget()
        span = Span(
            INVOKE_SPAN_NAME,
            {
                "mesh.target.service": target.service,
                "mesh.target.namespace": target.namespace,
                "mesh.target.env": target.env,
                "rpc.method": req.method,
                "rpc.codec": req.codec,
            },
        )
        with self._lock:
            self._spans.append(span)
        return span

    def record_request(self) -> None:
        with self._lock:
            self.requests += 1

    def record_failure(self, reason: str) -> None:
        with self._lock:
            self.failures[reason] += 1

    def record_retry(self, attempt: int) -> None:
        with self._lock:
            self.retries[attempt] += 1

    def record_latency(self, duration: float) -> None:
        """Record a call duration given in seconds, stored as whole milliseconds."""
        milliseconds = int(round(duration * 1_000_000)) // 1000
        with self._lock:
            self._latencies_ms.append(milliseconds)


class NoopEmitter(Emitter):
    """An emitter that hands out spans but records nothing."""

    def start_invoke(self, req: UnaryInvokeRequest) -> Span:
        return Span(INVOKE_SPAN_NAME)

    def record_request(self) -> None:
        pass

    def record_failure(self, reason: str) -> None:
        pass

    def record_retry(self, attempt: int) -> None:
        pass

    def record_latency(self, duration: float) -> None:
        pass