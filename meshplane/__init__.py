"""Service-mesh data plane library: directory sources, balancing, authorization and invoke forwarding."""

__version__ = "0.1.0"

__all__ = [
    "authz",
    "balancer",
    "config",
    "consul",
    "etcd",
    "identity",
    "invoke",
    "memory",
    "messages",
    "model",
    "overlay",
    "resolver",
    "sidecar_identity",
    "sources",
    "telemetry",
    "transport",
    "watch",
]