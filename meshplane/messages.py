"""Request and response messages of the local invoke API, and its status codes."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class StatusCode(enum.IntEnum):
    """Canonical RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    def __str__(self) -> str:
        if self is StatusCode.OK:
            return "OK"
        if self is StatusCode.CANCELLED:
            return "Canceled"
        return "".join(part.capitalize() for part in self.name.split("_"))


class InvokeError(Exception):
    """A failed call, carrying the status code it maps to."""

    def __init__(self, code: StatusCode, message: str = "") -> None:
        self.code = code
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"rpc error: code = {self.code} desc = {self.message}"


@dataclass
class InvokeTarget:
    """The logical service a request is addressed to."""

    service: str = ""
    namespace: str = ""
    env: str = ""
    port: int = 0


@dataclass
class Caller:
    """The identity of the service making a call."""

    app_id: str = ""
    service: str = ""
    namespace: str = ""
    env: str = ""


@dataclass
class MetadataEntry:
    """One metadata key with its values."""

    key: str
    values: list[str] = field(default_factory=list)


@dataclass
class InvocationContext:
    """Caller identity, tracing and timeout attached to a request."""

    caller: Caller | None = None
    trace_id: str = ""
    timeout_ms: int = 0
    metadata: list[MetadataEntry] = field(default_factory=list)


@dataclass
class UnaryInvokeRequest:
    """A unary call to forward: full method path plus encoded payload."""

    target: InvokeTarget | None = None
    method: str = ""
    payload: bytes = b""
    codec: str = ""
    context: InvocationContext | None = None


@dataclass
class UnaryInvokeResponse:
    """The encoded reply of a forwarded call."""

    payload: bytes = b""
    codec: str = ""