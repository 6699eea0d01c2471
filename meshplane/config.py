"""Configuration of directory sources, authorization, invocation and runtimes."""

from __future__ import annotations

from dataclasses import dataclass, field

SOURCE_CONSUL = "consul"
SOURCE_ETCD = "etcd"

MODE_AGENT = "agent"
MODE_SIDECAR = "sidecar"


@dataclass
class ConsulSourceConfig:
    """Connection settings of the Consul directory source."""

    address: str = ""
    scheme: str = ""
    token: str = ""
    datacenter: str = ""
    namespace: str = ""
    query_timeout_ms: int = 0
    watch_degrade_after_errors: int = 0


@dataclass
class EtcdSourceConfig:
    """Connection settings and key prefix of the etcd directory source."""

    endpoints: list[str] = field(default_factory=list)
    username: str = ""
    password: str = ""
    dial_timeout_ms: int = 0
    namespace: str = ""
    query_timeout_ms: int = 0
    watch_degrade_after_errors: int = 0


@dataclass
class SourceConfig:
    """Which directory source to use, and its settings."""

    kind: str = SOURCE_CONSUL
    consul: ConsulSourceConfig = field(default_factory=ConsulSourceConfig)
    etcd: EtcdSourceConfig = field(default_factory=EtcdSourceConfig)


@dataclass
class AuthzConfig:
    """Settings of the external authorization service."""

    target: str = ""
    timeout_ms: int = 0
    fail_open: bool = False


@dataclass
class InvokeConfig:
    """Timeout and retry policy of the invoke service."""

    timeout_ms: int = 1500
    per_try_timeout_ms: int = 500
    retry_max_attempts: int = 2
    retry_backoff_ms: int = 50
    retryable_codes: list[str] = field(
        default_factory=lambda: ["unavailable", "deadline_exceeded", "resource_exhausted"]
    )


@dataclass
class ControlPlaneConfig:
    """Connection to the control plane and how the directory falls back."""

    enabled: bool = False
    target: str = ""
    allow_source_fallback: bool = False


@dataclass
class AgentRuntimeConfig:
    """Listening settings of the shared local agent."""

    address: str = ""


@dataclass
class SidecarRuntimeConfig:
    """Listening settings and local service identity of a sidecar."""

    address: str = ""
    service_name: str = ""
    instance_id: str = ""
    namespace: str = ""
    env: str = ""
    target_mode: str = ""
    trusted_original_identity_injector: bool = False


@dataclass
class RuntimeConfig:
    """Settings of both runtime modes."""

    agent: AgentRuntimeConfig = field(default_factory=AgentRuntimeConfig)
    sidecar: SidecarRuntimeConfig = field(default_factory=SidecarRuntimeConfig)


@dataclass
class Config:
    """The complete data-plane configuration."""

    mode: str = MODE_AGENT
    source: SourceConfig = field(default_factory=SourceConfig)
    authz: AuthzConfig = field(default_factory=AuthzConfig)
    invoke: InvokeConfig = field(default_factory=InvokeConfig)
    control_plane: ControlPlaneConfig = field(default_factory=ControlPlaneConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)