"""A directory source backed by etcd registration keys."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import re
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

import httpx

from meshplane.config import EtcdSourceConfig
from meshplane.model import Endpoint, ServiceRef, ServiceSnapshot
from meshplane.watch import NoHealthyEndpointsError, PollingOptions, WatchStream, run_polling

_PORT_PATTERN = re.compile(r"[+-]?[0-9]+")


def _duration_from_ms(value: int) -> float:
    return value / 1000 if value > 0 else 1.0


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _prefix_range_end(prefix: bytes) -> bytes:
    end = bytearray(prefix)
    for i in range(len(end) - 1, -1, -1):
        if end[i] < 0xFF:
            end[i] += 1
            return bytes(end[: i + 1])
    return b"\x00"


@runtime_checkable
class KVGetter(Protocol):
    """Reads every value stored under a key prefix."""

    async def get_prefix(self, prefix: str) -> list[bytes]: ...


class HttpKVGetter:
    """Reads etcd keys through the etcd v3 JSON gateway."""

    def __init__(
        self,
        endpoints: list[str],
        username: str = "",
        password: str = "",
        dial_timeout: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        urls = [self._base_url(e) for e in endpoints if e.strip()]
        if not urls:
            raise ValueError("etcd client: no available endpoints")
        self._endpoints = urls
        self._username = username
        self._password = password
        self._timeout = httpx.Timeout(None, connect=dial_timeout)
        self._client = client
        self._auth_token: str | None = None

    @staticmethod
    def _base_url(endpoint: str) -> str:
        endpoint = endpoint.strip().rstrip("/")
        return endpoint if "://" in endpoint else f"http://{endpoint}"

    @contextlib.asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    async def _auth_headers(self, client: httpx.AsyncClient, base: str) -> dict[str, str]:
        if not self._username:
            return {}
        if self._auth_token is None:
            response = await client.post(
                f"{base}/v3/auth/authenticate",
                json={"name": self._username, "password": self._password},
            )
            response.raise_for_status()
            self._auth_token = str(response.json().get("token", ""))
        return {"Authorization": self._auth_token}

    async def get_prefix(self, prefix: str) -> list[bytes]:
        """Return the values of all keys that start with the prefix."""
        raw = prefix.encode()
        body = {"key": _b64(raw), "range_end": _b64(_prefix_range_end(raw))}
        last_error: Exception | None = None
        async with self._session() as client:
            for base in self._endpoints:
                try:
                    headers = await self._auth_headers(client, base)
                    response = await client.post(f"{base}/v3/kv/range", json=body, headers=headers)
                except httpx.TransportError as err:
                    last_error = err
                    continue
                response.raise_for_status()
                kvs = response.json().get("kvs") or []
                return [base64.b64decode(kv.get("value", "")) for kv in kvs]
        raise ConnectionError("etcd: no endpoint could be reached") from last_error


class EtcdProvider:
    """Turns etcd registrations under <namespace>/<env>/<service> into snapshots."""

    def __init__(self, config: EtcdSourceConfig, client: KVGetter | None = None) -> None:
        self.config = config
        self._client = client or HttpKVGetter(
            config.endpoints,
            username=config.username,
            password=config.password,
            dial_timeout=_duration_from_ms(config.dial_timeout_ms),
        )

    @property
    def name(self) -> str:
        return "etcd"

    async def resolve(self, target: ServiceRef) -> ServiceSnapshot:
        """Read every registered instance of the target service."""
        namespace = target.namespace.strip() or self.config.namespace.strip()
        env = target.env.strip()
        service = target.service.strip()
        prefix = f"{namespace}/{env}/{service}"

        async with asyncio.timeout(_duration_from_ms(self.config.query_timeout_ms)):
            values = await self._client.get_prefix(prefix)

        endpoints = [ep for ep in map(decode_endpoint, values) if ep is not None]
        if not endpoints:
            raise NoHealthyEndpointsError(f"etcd service={service}")
        return ServiceSnapshot(
            service=ServiceRef(service=service, namespace=namespace, env=env, port=target.port),
            endpoints=tuple(endpoints),
        )

    def watch(self, target: ServiceRef) -> WatchStream:
        """Poll the target and stream its changes; needs a running event loop."""

        async def poll() -> ServiceSnapshot:
            return await self.resolve(target)

        return run_polling(
            target,
            poll,
            _duration_from_ms(self.config.query_timeout_ms),
            PollingOptions(self.config.watch_degrade_after_errors),
        )


def decode_endpoint(value: bytes | str | None) -> Endpoint | None:
    """Parse one registration value into a routable endpoint, or None."""
    if not value:
        return None
    try:
        node = json.loads(value)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(node, dict):
        return None

    weight = node.get("weight")
    if weight is None:
        weight = 0
    if not isinstance(weight, int) or isinstance(weight, bool):
        return None

    network = node.get("network")
    if network is not None and not isinstance(network, dict):
        return None
    internal = (network or {}).get("internal")
    if internal is None:
        internal = ""
    if not isinstance(internal, str) or not internal.strip():
        return None

    try:
        host, port = split_address(internal)
    except ValueError:
        return None
    return Endpoint(address=host, port=port, weight=weight if weight > 0 else 1)


def split_address(raw: str) -> tuple[str, int]:
    """Split host:port, accepting bracketed IPv6 hosts."""
    colon = raw.rfind(":")
    if colon < 0:
        raise ValueError(f"address {raw}: missing port in address")
    start, stop = 0, 0
    if raw.startswith("["):
        end = raw.find("]")
        if end < 0:
            raise ValueError(f"address {raw}: missing ']' in address")
        if end + 1 == len(raw):
            raise ValueError(f"address {raw}: missing port in address")
        if end + 1 != colon:
            if raw[end + 1] == ":":
                raise ValueError(f"address {raw}: too many colons in address")
            raise ValueError(f"address {raw}: missing port in address")
        host = raw[1:end]
        start, stop = 1, end + 1
    else:
        host = raw[:colon]
        if ":" in host:
            raise ValueError(f"address {raw}: too many colons in address")
    if "[" in raw[start:]:
        raise ValueError(f"address {raw}: unexpected '[' in address")
    if "]" in raw[stop:]:
        raise ValueError(f"address {raw}: unexpected ']' in address")

    port_raw = raw[colon + 1 :]
    if not _PORT_PATTERN.fullmatch(port_raw):
        raise ValueError(f"invalid port {port_raw!r}")
    return host, int(port_raw) % 0x10000