"""Runtime identity of a data-plane instance running as agent or sidecar."""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field

from meshplane.config import MODE_AGENT, MODE_SIDECAR, SOURCE_ETCD, Config

AGENT_SERVICE_NAME = "service-mesh-agent"
UNKNOWN_NODE = "unknown-node"


@dataclass(frozen=True)
class Params:
    """What differs between the agent and sidecar runtimes."""

    mode: str
    address: str = ""
    service_name: str = ""
    instance_id: str = ""
    namespace: str = ""
    env: str = ""
    target_mode: str = ""
    trusted_original_identity_injector: bool = False
    log_attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RuntimeIdentity:
    """The stable identity a data-plane instance presents to the control plane."""

    dataplane_id: str
    mode: str
    node_id: str
    namespace: str
    service: str
    env: str

    def resource_attributes(self) -> dict[str, str]:
        """Return the telemetry resource attributes describing this instance."""
        return {
            "mesh.mode": self.mode,
            "mesh.dataplane_id": self.dataplane_id,
            "mesh.node_id": self.node_id,
            "mesh.namespace": self.namespace,
            "mesh.service": self.service,
            "mesh.env": self.env,
        }

    def as_control_plane(self) -> dict[str, str]:
        """Return the identity in the shape the control plane registers."""
        return {
            "dataplane_id": self.dataplane_id,
            "mode": self.mode,
            "node_id": self.node_id,
            "namespace": self.namespace,
            "service": self.service,
            "env": self.env,
        }


def _hostname() -> str:
    try:
        name = socket.gethostname()
    except OSError:
        return UNKNOWN_NODE
    return name or UNKNOWN_NODE


def build_identity(cfg: Config, params: Params) -> RuntimeIdentity:
    """Derive the runtime identity from the configuration and mode parameters."""
    service = params.service_name.strip() or f"service-mesh-{params.mode}"
    instance_id = params.instance_id.strip()
    node_id = instance_id or _hostname()
    dataplane_id = instance_id or f"{node_id}-{time.time_ns()}"

    namespace = params.namespace.strip()
    if not namespace:
        if cfg.source.kind == SOURCE_ETCD:
            namespace = cfg.source.etcd.namespace
        else:
            namespace = cfg.source.consul.namespace

    return RuntimeIdentity(
        dataplane_id=dataplane_id,
        mode=params.mode,
        node_id=node_id,
        namespace=namespace.strip(),
        service=service,
        env=params.env.strip(),
    )


def agent_params(cfg: Config) -> Params:
    """Parameters of the shared local agent runtime."""
    return Params(
        mode=MODE_AGENT,
        address=cfg.runtime.agent.address,
        service_name=AGENT_SERVICE_NAME,
        log_attributes={
            "source_kind": cfg.source.kind,
            "authz_target": cfg.authz.target,
        },
    )


def sidecar_params(cfg: Config) -> Params:
    """Parameters of a sidecar bound to one local service instance."""
    sidecar = cfg.runtime.sidecar
    return Params(
        mode=MODE_SIDECAR,
        address=sidecar.address,
        service_name=sidecar.service_name,
        instance_id=sidecar.instance_id,
        namespace=sidecar.namespace,
        env=sidecar.env,
        target_mode=sidecar.target_mode,
        trusted_original_identity_injector=sidecar.trusted_original_identity_injector,
        log_attributes={
            "service_name": sidecar.service_name,
            "instance_id": sidecar.instance_id,
            "namespace": sidecar.namespace,
            "env": sidecar.env,
            "target_mode": sidecar.target_mode,
            "source_kind": cfg.source.kind,
            "authz_target": cfg.authz.target,
        },
    )