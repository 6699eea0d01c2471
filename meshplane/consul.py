"""A directory source backed by the Consul health API."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import asyncio

import httpx

from meshplane.config import ConsulSourceConfig
from meshplane.model import Endpoint, ServiceRef, ServiceSnapshot
from meshplane.watch import NoHealthyEndpointsError, PollingOptions, WatchStream, run_polling

DEFAULT_ADDRESS = "127.0.0.1:8500"
DEFAULT_SCHEME = "http"


def _duration_from_ms(value: int) -> float:
    return value / 1000 if value > 0 else 1.0


@runtime_checkable
class HealthService(Protocol):
    """The part of the Consul health API the provider needs."""

    async def service(
        self, service: str, passing_only: bool, datacenter: str
    ) -> list[Mapping[str, Any]]: ...


class HttpHealthService:
    """Queries the Consul HTTP health endpoint."""

    def __init__(
        self,
        address: str = "",
        scheme: str = "",
        token: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        address = address.strip() or DEFAULT_ADDRESS
        scheme = scheme.strip() or DEFAULT_SCHEME
        if "://" in address:
            scheme, address = address.split("://", 1)
        self._base_url = f"{scheme}://{address.rstrip('/')}"
        self._token = token.strip()
        self._client = client

    async def service(
        self, service: str, passing_only: bool, datacenter: str
    ) -> list[Mapping[str, Any]]:
        """Return the health entries of a service."""
        params: dict[str, str] = {}
        if passing_only:
            params["passing"] = "1"
        if datacenter:
            params["dc"] = datacenter
        headers = {"X-Consul-Token": self._token} if self._token else {}
        url = f"{self._base_url}/v1/health/service/{quote(service, safe='')}"
        if self._client is not None:
            response = await self._client.get(url, params=params, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, params=params, headers=headers)
        response.raise_for_status()
        return response.json() or []


class ConsulProvider:
    """Turns healthy Consul instances into service snapshots."""

    def __init__(
        self, config: ConsulSourceConfig, health: HealthService | None = None
    ) -> None:
        self.config = config
        self._health = health or HttpHealthService(config.address, config.scheme, config.token)

    @property
    def name(self) -> str:
        return "consul"

    async def resolve(self, target: ServiceRef) -> ServiceSnapshot:
        """Fetch passing instances of the target service."""
        timeout = _duration_from_ms(self.config.query_timeout_ms)
        try:
            async with asyncio.timeout(timeout):
                rows = await self._health.service(
                    target.service, True, self.config.datacenter.strip()
                )
        except TimeoutError as err:
            raise TimeoutError(
                f"consul query timeout for service {target.service}: deadline exceeded"
            ) from err

        endpoints = [ep for ep in map(decode_endpoint, rows or []) if ep is not None]
        if not endpoints:
            raise NoHealthyEndpointsError(f"consul service={target.service}")
        return ServiceSnapshot(service=target, endpoints=tuple(endpoints))

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


def decode_endpoint(row: Mapping[str, Any] | None) -> Endpoint | None:
    """Extract a routable endpoint from a Consul health entry, or None."""
    if not row:
        return None
    service = row.get("Service")
    if not service:
        return None
    address = str(service.get("Address") or "").strip()
    node = row.get("Node")
    if not address and node:
        address = str(node.get("Address") or "").strip()
    port = int(service.get("Port") or 0)
    if not address or port == 0:
        return None
    return Endpoint(address=address, port=port, weight=1)