"""Chooses the directory source named by the configuration."""

from __future__ import annotations

from meshplane.config import SOURCE_CONSUL, SOURCE_ETCD, SourceConfig
from meshplane.consul import ConsulProvider
from meshplane.etcd import EtcdProvider
from meshplane.model import Provider


def from_config(cfg: SourceConfig) -> Provider:
    """Build the provider for ``cfg.kind``; raise ValueError for unknown kinds."""
    match cfg.kind:
        case kind if kind == SOURCE_CONSUL:
            return ConsulProvider(cfg.consul)
        case kind if kind == SOURCE_ETCD:
            return EtcdProvider(cfg.etcd)
        case _:
            raise ValueError(f"unsupported source kind: {cfg.kind}")