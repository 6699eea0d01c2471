"""The local invoke service: validation, authorization, resolution, retries and forwarding."""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from meshplane.authz import Authorizer
from meshplane.config import InvokeConfig
from meshplane.messages import InvokeError, StatusCode, UnaryInvokeRequest, UnaryInvokeResponse
from meshplane.model import Endpoint, ServiceRef
from meshplane.resolver import SnapshotDegradedError
from meshplane.sidecar_identity import (
    IdentityConflictError,
    LocalIdentity,
    apply_local_identity,
    normalize_local_identity,
    validate_sidecar_target,
)
from meshplane.telemetry import Emitter, NoopEmitter, Span
from meshplane.transport import Invoker

DEFAULT_TIMEOUT = 1.5
DEFAULT_PER_TRY_TIMEOUT = 0.5
DEFAULT_RETRY_MAX_ATTEMPTS = 2
DEFAULT_RETRY_BACKOFF = 0.05
DEFAULT_RETRYABLE_CODES = frozenset(
    {StatusCode.UNAVAILABLE, StatusCode.DEADLINE_EXCEEDED, StatusCode.RESOURCE_EXHAUSTED}
)

_CONFIG_CODES = {
    "canceled": StatusCode.CANCELLED,
    "unknown": StatusCode.UNKNOWN,
    "deadline_exceeded": StatusCode.DEADLINE_EXCEEDED,
    "resource_exhausted": StatusCode.RESOURCE_EXHAUSTED,
    "aborted": StatusCode.ABORTED,
    "unavailable": StatusCode.UNAVAILABLE,
}


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings pushed by the control plane."""

    max_attempts: int = 0
    per_try_timeout_ms: int = 0


@dataclass(frozen=True)
class RoutePolicy:
    """Per-service timeout and retry overrides pushed by the control plane."""

    service: ServiceRef | None = None
    timeout_ms: int = 0
    retry: RetryPolicy | None = None


@runtime_checkable
class PolicySource(Protocol):
    """Supplies route policies; returns None when there is none for a target."""

    def resolve_route_policy(self, target: ServiceRef) -> RoutePolicy | None: ...


@runtime_checkable
class _EndpointResolver(Protocol):
    async def resolve(self, target: ServiceRef) -> Endpoint: ...


@dataclass(frozen=True)
class Options:
    """Timeout and retry policy of the invoke service; durations are in seconds.

    Non-positive or empty values are replaced by the defaults.
    """

    timeout: float = DEFAULT_TIMEOUT
    per_try_timeout: float = DEFAULT_PER_TRY_TIMEOUT
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    retryable_codes: frozenset[StatusCode] = field(default_factory=frozenset)
    telemetry: Emitter | None = None
    policy_source: PolicySource | None = None
    local_identity: LocalIdentity | None = None

    def __post_init__(self) -> None:
        def set_(name: str, value: object) -> None:
            object.__setattr__(self, name, value)

        if self.timeout <= 0:
            set_("timeout", DEFAULT_TIMEOUT)
        if self.per_try_timeout <= 0:
            set_("per_try_timeout", DEFAULT_PER_TRY_TIMEOUT)
        if self.retry_max_attempts <= 0:
            set_("retry_max_attempts", DEFAULT_RETRY_MAX_ATTEMPTS)
        if self.retry_backoff < 0:
            set_("retry_backoff", 0.0)
        codes = frozenset(StatusCode(code) for code in self.retryable_codes or ())
        set_("retryable_codes", codes or DEFAULT_RETRYABLE_CODES)
        if self.telemetry is None:
            set_("telemetry", NoopEmitter())
        if self.local_identity is not None:
            set_("local_identity", normalize_local_identity(self.local_identity))


def options_from_config(cfg: InvokeConfig) -> Options:
    """Convert configured milliseconds and code names into runtime options.

    Unknown code names are ignored.
    """
    codes = {
        _CONFIG_CODES[name.strip().lower()]
        for name in cfg.retryable_codes
        if name.strip().lower() in _CONFIG_CODES
    }
    return Options(
        timeout=cfg.timeout_ms / 1000,
        per_try_timeout=cfg.per_try_timeout_ms / 1000,
        retry_max_attempts=cfg.retry_max_attempts,
        retry_backoff=cfg.retry_backoff_ms / 1000,
        retryable_codes=frozenset(codes),
    )


def _merge_with_policy(base: Options, policy: RoutePolicy | None) -> Options:
    if policy is None:
        return base
    changes: dict[str, object] = {}
    if policy.timeout_ms > 0:
        changes["timeout"] = policy.timeout_ms / 1000
    if policy.retry is not None:
        if policy.retry.max_attempts > 0:
            changes["retry_max_attempts"] = policy.retry.max_attempts
        if policy.retry.per_try_timeout_ms > 0:
            changes["per_try_timeout"] = policy.retry.per_try_timeout_ms / 1000
    return dataclasses.replace(base, **changes)


def _chain(err: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _find(err: BaseException, kind: type[BaseException]) -> BaseException | None:
    return next((e for e in _chain(err) if isinstance(e, kind)), None)


def _should_retry(err: BaseException | None, attempt: int, attempts: int, options: Options) -> bool:
    if err is None or attempt >= attempts:
        return False
    if _find(err, asyncio.CancelledError) is not None:
        return False
    if _find(err, TimeoutError) is not None:
        return StatusCode.DEADLINE_EXCEEDED in options.retryable_codes
    status = _find(err, InvokeError)
    code = status.code if isinstance(status, InvokeError) else StatusCode.UNKNOWN
    return code in options.retryable_codes


def _failure(span: Span, emitter: Emitter, err: BaseException) -> InvokeError:
    span.record_error(err)
    if _find(err, asyncio.CancelledError) is not None:
        span.set_status(False, "invoke canceled")
        emitter.record_failure("canceled")
        return InvokeError(StatusCode.CANCELLED, str(err) or "canceled")
    if _find(err, TimeoutError) is not None:
        span.set_status(False, "invoke deadline exceeded")
        emitter.record_failure("deadline_exceeded")
        return InvokeError(StatusCode.DEADLINE_EXCEEDED, str(err) or "deadline exceeded")
    if _find(err, SnapshotDegradedError) is not None:
        span.set_status(False, "invoke degraded")
        emitter.record_failure("snapshot_degraded")
        return InvokeError(StatusCode.FAILED_PRECONDITION, str(err))
    span.set_status(False, "invoke failed")
    emitter.record_failure("invoke")
    return InvokeError(StatusCode.UNAVAILABLE, f"invoke target failed: {err}")


class InvokeService:
    """Validates, authorizes, resolves and forwards unary invoke requests."""

    def __init__(
        self,
        authorizer: Authorizer,
        resolver: _EndpointResolver,
        transport: Invoker,
        options: Options | None = None,
    ) -> None:
        self._authorizer = authorizer
        self._resolver = resolver
        self._transport = transport
        self.options = options if options is not None else Options()

    async def unary_invoke(self, req: UnaryInvokeRequest) -> UnaryInvokeResponse:
        """Forward one request; raise InvokeError with the matching status code on failure."""
        target = self._validate(req)
        options = self.options
        if options.policy_source is not None:
            policy = options.policy_source.resolve_route_policy(target)
            if policy is not None:
                options = _merge_with_policy(options, policy)

        call_timeout = options.timeout
        if req.context is not None and req.context.timeout_ms > 0:
            call_timeout = req.context.timeout_ms / 1000

        emitter = options.telemetry
        emitter.record_request()
        started = time.monotonic()
        try:
            with emitter.start_invoke(req) as span:
                try:
                    async with asyncio.timeout(call_timeout):
                        await self._authorize(req, span, emitter)
                        return await self._attempt(req, target, options, span, emitter)
                except TimeoutError as err:
                    raise _failure(span, emitter, err) from err
                except asyncio.CancelledError:
                    span.set_status(False, "invoke canceled")
                    emitter.record_failure("canceled")
                    raise
        finally:
            emitter.record_latency(time.monotonic() - started)

    def _validate(self, req: UnaryInvokeRequest) -> ServiceRef:
        if req.target is None or not req.target.service:
            raise InvokeError(StatusCode.INVALID_ARGUMENT, "target.service is required")
        if not req.method:
            raise InvokeError(StatusCode.INVALID_ARGUMENT, "method is required")
        if not req.method.startswith("/"):
            raise InvokeError(
                StatusCode.INVALID_ARGUMENT, "method must be a full grpc method path"
            )
        identity = self.options.local_identity
        try:
            apply_local_identity(req, identity)
            target = ServiceRef(
                service=req.target.service,
                namespace=req.target.namespace,
                env=req.target.env,
                port=req.target.port,
            )
            validate_sidecar_target(target, identity)
        except IdentityConflictError as err:
            raise InvokeError(StatusCode.INVALID_ARGUMENT, str(err)) from err
        return target

    async def _authorize(self, req: UnaryInvokeRequest, span: Span, emitter: Emitter) -> None:
        try:
            await self._authorizer.check(req)
        except Exception as err:
            span.record_error(err)
            span.set_status(False, "authz failed")
            emitter.record_failure("authz")
            raise InvokeError(
                StatusCode.PERMISSION_DENIED, f"authz check failed: {err}"
            ) from err

    async def _attempt(
        self,
        req: UnaryInvokeRequest,
        target: ServiceRef,
        options: Options,
        span: Span,
        emitter: Emitter,
    ) -> UnaryInvokeResponse:
        attempts = max(options.retry_max_attempts, 1)
        last_err: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                async with asyncio.timeout(options.per_try_timeout):
                    endpoint = await self._resolver.resolve(target)
                    try:
                        response = await self._transport.invoke(endpoint, req)
                    except Exception as err:
                        span.record_error(err)
                        raise
            except Exception as err:
                last_err = err
            else:
                span.set_status(True, "invoke succeeded")
                return response

            if not _should_retry(last_err, attempt, attempts, options):
                break
            emitter.record_retry(attempt)
            if options.retry_backoff > 0:
                await asyncio.sleep(options.retry_backoff)

        assert last_err is not None
        raise _failure(span, emitter, last_err) from last_err