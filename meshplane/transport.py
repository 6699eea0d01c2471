"""Forwards encoded payloads to a downstream gRPC endpoint."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import grpc
import grpc.aio

from meshplane.messages import InvokeError, StatusCode, UnaryInvokeRequest, UnaryInvokeResponse
from meshplane.model import Endpoint


@runtime_checkable
class Invoker(Protocol):
    """Sends one invoke request to a chosen endpoint."""

    async def invoke(self, endpoint: Endpoint, req: UnaryInvokeRequest) -> UnaryInvokeResponse: ...


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _status_code(code: grpc.StatusCode | None) -> StatusCode:
    if code is None:
        return StatusCode.UNKNOWN
    try:
        return StatusCode[code.name]
    except KeyError:
        return StatusCode.UNKNOWN


class GrpcTransport:
    """Sends raw payload bytes over plaintext gRPC, reusing one channel per address.

    The request method must be a full method path and the payload the already
    encoded request message; the reply bytes are returned untouched.
    """

    def __init__(self) -> None:
        self._channels: dict[str, grpc.aio.Channel] = {}

    def _channel(self, target: str) -> grpc.aio.Channel:
        channel = self._channels.get(target)
        if channel is None:
            channel = grpc.aio.insecure_channel(target)
            self._channels[target] = channel
        return channel

    async def invoke(self, endpoint: Endpoint, req: UnaryInvokeRequest) -> UnaryInvokeResponse:
        channel = self._channel(_join_host_port(endpoint.address, endpoint.port))
        call = channel.unary_unary(req.method)
        try:
            payload = await call(req.payload or b"")
        except grpc.aio.AioRpcError as err:
            raise InvokeError(_status_code(err.code()), err.details() or "") from err
        return UnaryInvokeResponse(payload=payload, codec=req.codec)

    async def close(self) -> None:
        """Close every cached channel."""
        channels, self._channels = list(self._channels.values()), {}
        for channel in channels:
            await channel.close()

    async def __aenter__(self) -> GrpcTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()