# meshplane

`meshplane` is an asyncio library holding the data-plane pieces of a small
service mesh. For an outbound call it works out which instance of which
service the request should go to, checks that the call is allowed, and
forwards the raw protobuf payload of a unary gRPC call to the chosen
instance.

## Modules

| Module | Purpose |
| --- | --- |
| `meshplane.model` | `ServiceRef`, `Endpoint`, `ServiceSnapshot`, `SnapshotStatus` (`CURRENT`, `STALE`, `DEGRADED`), the `Provider` protocol and `service_key`. |
| `meshplane.watch` | `EventKind`, `WatchEvent`, `WatchStream`, `PollingOptions`, `NoHealthyEndpointsError` and `run_polling`, which turns a one-shot lookup into a stream of upsert and delete events. |
| `meshplane.memory` | `MemoryProvider`, a dictionary-backed directory with push-style watches (`watch`, `upsert`, `delete`). |
| `meshplane.consul` | `ConsulProvider` and `HttpHealthService`, reading passing instances from the Consul HTTP health API. |
| `meshplane.etcd` | `EtcdProvider` and `HttpKVGetter`, reading JSON registrations under `<namespace>/<env>/<service>` through the etcd v3 JSON gateway. |
| `meshplane.sources` | `from_config`, building the Consul or etcd provider named by `SourceConfig.kind`. |
| `meshplane.overlay` | `Overlay`, putting a control-plane `SnapshotResolver` in front of a directory source, with or without fallback. |
| `meshplane.balancer` | `RoundRobin`, a `Picker` with one cursor per service. |
| `meshplane.resolver` | `Resolver`, directory lookup plus endpoint selection; degraded snapshots raise `SnapshotStatusError`. |
| `meshplane.authz` | `AllowAll`, and `ExtAuthz` over any `ExtAuthzClient`, honouring its `fail_open` setting. |
| `meshplane.transport` | `GrpcTransport`, forwarding payload bytes to `host:port` over cached plaintext `grpc.aio` channels. |
| `meshplane.sidecar_identity` | `LocalIdentity`, `apply_local_identity`, `validate_sidecar_target` and `rewrite_original_identity_trust`. |
| `meshplane.invoke` | `InvokeService.unary_invoke`, `Options`, `options_from_config`, and the `RoutePolicy` / `PolicySource` overrides. |
| `meshplane.telemetry` | `Emitter` (in-process counters, latencies and `Span`s) and `NoopEmitter`. |
| `meshplane.messages` | Request and response dataclasses, `StatusCode` and `InvokeError`. |
| `meshplane.identity` | `Params`, `RuntimeIdentity`, `build_identity`, `agent_params` and `sidecar_params`. |
| `meshplane.config` | Configuration dataclasses (`Config`, `SourceConfig`, `InvokeConfig`, `AuthzConfig`, ...). |

## A first look

```python
from meshplane.balancer import RoundRobin
from meshplane.model import Endpoint, ServiceRef, ServiceSnapshot

orders = ServiceRef(service="orders", namespace="default", env="dev")
snapshot = ServiceSnapshot(
    service=orders,
    endpoints=[
        Endpoint(address="10.0.0.1", port=19090, weight=1),
        Endpoint(address="10.0.0.2", port=19090, weight=1),
    ],
)

picker = RoundRobin()
picker.pick(snapshot).address  # "10.0.0.1"
picker.pick(snapshot).address  # "10.0.0.2"
```

Cursors are keyed by `namespace/env/service`, so calls to `orders` in `dev`
do not move the rotation of `orders` in `prod`.

## How a call flows

1. `InvokeService.unary_invoke` requires `target.service` and a full method
   path such as `/acme.orders.v1.OrderService/GetOrder`; otherwise it raises
   `InvokeError` with `INVALID_ARGUMENT`. With a `LocalIdentity` in the
   options (sidecar mode) the caller and missing target namespace/env are
   filled in, a trace id is generated when absent, conflicting caller fields
   or a target pointing back at the local service are rejected with
   `INVALID_ARGUMENT`, and caller-supplied trust markers are dropped.
2. A `PolicySource`, when set, may override the overall timeout, the number
   of attempts and the per-try timeout for the target. A `timeout_ms` in the
   request context overrides the overall timeout.
3. The authorizer is consulted first; a refusal becomes
   `PERMISSION_DENIED`.
4. The resolver returns an endpoint and the transport sends the payload.
   Each attempt is bounded by the per-try timeout.
5. Failures whose code is in `retryable_codes` are retried, with
   `retry_backoff` between attempts. When the call finally fails the
   `InvokeError` carries `DEADLINE_EXCEEDED` for timeouts,
   `FAILED_PRECONDITION` for degraded snapshots and `UNAVAILABLE` otherwise.
   Cancellation of the calling task propagates as `asyncio.CancelledError`.

## Watching a directory

`MemoryProvider.watch` is fed directly by `upsert` and `delete`.
`ConsulProvider.watch` and `EtcdProvider.watch` use `run_polling`, which must
be called with a running event loop. Each poll that succeeds emits an upsert
when the snapshot changed; a vanished target emits a delete. A failed poll
marks the last snapshot `STALE`; after enough consecutive failures the
snapshot is marked `DEGRADED`, with a reason such as
`class=unavailable error=registry unavailable`. Streams hold at most 8
pending events and drop the rest; iterate them with `async for` and close them
to stop polling.

## Defaults

- Invoke: 1.5 s overall timeout, 0.5 s per try, 2 attempts, 50 ms backoff,
  retrying on `UNAVAILABLE`, `DEADLINE_EXCEEDED` and `RESOURCE_EXHAUSTED`.
- Consul and etcd queries: 1 s timeout unless `query_timeout_ms` is set; the
  same value is the polling interval of their watches.
- Polling watches: degraded after 3 consecutive errors unless
  `watch_degrade_after_errors` is set.

## What this package does not do

- It has no command and runs no server: nothing here listens for invoke
  requests. `InvokeService` is called directly from your own code or server.
- It has no control-plane client. `Overlay` and `PolicySource` take whatever
  object you supply; `identity.build_identity` only computes the identity
  such a client would register.
- It ships no external authorization client; `ExtAuthz` wraps an object
  implementing the `ExtAuthzClient` protocol.
- Telemetry stays in process: `Emitter` keeps counters, recent latencies and
  spans in memory and exports nothing.