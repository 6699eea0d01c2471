"""Authorization of invoke requests before they are forwarded."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from meshplane.messages import StatusCode, UnaryInvokeRequest


class PermissionDeniedError(Exception):
    """The authorization service explicitly denied the request."""

    BASE_MESSAGE = "authz permission denied"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        message = f"{self.BASE_MESSAGE}: {detail}" if detail else self.BASE_MESSAGE
        super().__init__(message)


@runtime_checkable
class Authorizer(Protocol):
    """Returns normally to allow a request; raises to deny it."""

    async def check(self, req: UnaryInvokeRequest) -> None: ...


class AllowAll:
    """Allows every request, counting how many it has let through."""

    def __init__(self) -> None:
        self.allowed = 0

    async def check(self, req: UnaryInvokeRequest) -> None:
        self.allowed += 1


@dataclass(frozen=True)
class AuthzStatus:
    """The status an external authorization service answered with."""

    code: int
    message: str = ""


@runtime_checkable
class ExtAuthzClient(Protocol):
    """A client of an external authorization service."""

    @property
    def fail_open(self) -> bool: ...

    async def check(self, req: UnaryInvokeRequest) -> AuthzStatus | None: ...


class ExtAuthz:
    """Authorizes through an external service, honouring its fail-open setting."""

    def __init__(self, client: ExtAuthzClient) -> None:
        self._client = client

    async def check(self, req: UnaryInvokeRequest) -> None:
        try:
            status = await self._client.check(req)
        except Exception:
            if self._client.fail_open:
                return
            raise

        if status is None:
            if self._client.fail_open:
                return
            raise RuntimeError("ext_authz returned empty status")

        if status.code == StatusCode.OK:
            return
        raise PermissionDeniedError(status_message(status))


def status_message(status: AuthzStatus | None) -> str:
    """Return the readable text of an authorization status."""
    if status is None:
        return "empty authz status"
    if status.message.strip():
        return status.message
    try:
        return str(StatusCode(status.code))
    except ValueError:
        return f"Code({status.code})"