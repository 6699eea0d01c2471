"""Binding a sidecar's local service identity onto outgoing requests."""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Iterable
from dataclasses import dataclass

from meshplane.messages import (
    Caller,
    InvocationContext,
    InvokeTarget,
    MetadataEntry,
    UnaryInvokeRequest,
)
from meshplane.model import ServiceRef

TARGET_MODE_UPSTREAM_ONLY = "upstream_only"
TARGET_MODE_ALLOW_SAME_SERVICE = "allow_same_service"
TARGET_MODE_ALLOW_CROSS_SCOPE_SAME_SERVICE = "allow_cross_scope_same_service"

METADATA_USER_ID = "x-original-user-id"
METADATA_SUBJECT = "x-original-user-subject"
METADATA_ISSUER = "x-original-user-issuer"
METADATA_TRUST = "x-original-user-trust"
TRUST_LOCAL = "local"

_ORIGINAL_IDENTITY_KEYS = frozenset({METADATA_USER_ID, METADATA_SUBJECT, METADATA_ISSUER})


class IdentityConflictError(ValueError):
    """A request contradicts the sidecar's bound local identity."""


@dataclass(frozen=True)
class LocalIdentity:
    """The local business service a sidecar is bound to."""

    app_id: str = ""
    service: str = ""
    namespace: str = ""
    env: str = ""
    target_mode: str = ""
    trusted_original_identity_injector: bool = False


def normalize_local_identity(identity: LocalIdentity) -> LocalIdentity:
    """Trim every field, default app_id to service and the target mode to upstream-only."""
    service = identity.service.strip()
    return dataclasses.replace(
        identity,
        app_id=identity.app_id.strip() or service,
        service=service,
        namespace=identity.namespace.strip(),
        env=identity.env.strip(),
        target_mode=identity.target_mode.lower().strip() or TARGET_MODE_UPSTREAM_ONLY,
    )


def _ensure_match(field_name: str, actual: str, expected: str) -> None:
    actual, expected = actual.strip(), expected.strip()
    if actual and expected and actual != expected:
        raise IdentityConflictError(f"{field_name} conflicts with sidecar local identity")


def _default_trace_id(identity: LocalIdentity | None) -> str:
    base = "mesh"
    if identity is not None and identity.service.strip():
        base = identity.service.strip()
    return f"{base}-{time.time_ns()}"


def apply_local_identity(req: UnaryInvokeRequest, identity: LocalIdentity | None) -> None:
    """Fill caller and target defaults from the sidecar identity, in place.

    Raises IdentityConflictError when an explicit caller field disagrees.
    """
    if identity is None:
        return
    if req.context is None:
        req.context = InvocationContext()
    context = req.context
    if context.caller is None:
        context.caller = Caller()
    caller = context.caller

    _ensure_match("context.caller.service", caller.service, identity.service)
    _ensure_match("context.caller.namespace", caller.namespace, identity.namespace)
    _ensure_match("context.caller.env", caller.env, identity.env)

    if not caller.app_id.strip():
        caller.app_id = identity.app_id
    if not caller.service.strip():
        caller.service = identity.service
    if not caller.namespace.strip():
        caller.namespace = identity.namespace
    if not caller.env.strip():
        caller.env = identity.env

    if req.target is None:
        req.target = InvokeTarget()
    if not req.target.namespace.strip():
        req.target.namespace = identity.namespace
    if not req.target.env.strip():
        req.target.env = identity.env
    if not context.trace_id.strip():
        context.trace_id = _default_trace_id(identity)
    context.metadata = rewrite_original_identity_trust(context.metadata, identity)


def rewrite_original_identity_trust(
    entries: Iterable[MetadataEntry | None] | None, identity: LocalIdentity | None
) -> list[MetadataEntry]:
    """Drop caller-supplied trust markers; mark original identity local for trusted injectors."""
    rewritten: list[MetadataEntry] = []
    has_original_identity = False
    for entry in entries or ():
        if entry is None:
            continue
        key = entry.key.strip().lower()
        if key == METADATA_TRUST:
            continue
        if key in _ORIGINAL_IDENTITY_KEYS:
            has_original_identity = True
        rewritten.append(entry)
    if identity is not None and identity.trusted_original_identity_injector and has_original_identity:
        rewritten.append(MetadataEntry(key=METADATA_TRUST, values=[TRUST_LOCAL]))
    return rewritten


def _matches_local_dimension(target: str, local: str) -> bool:
    target, local = target.strip(), local.strip()
    return not target or not local or target == local


def _validate_cross_scope_target(target: ServiceRef, identity: LocalIdentity) -> None:
    target_service = target.service.strip()
    identity_service = identity.service.strip()
    if not target_service or not identity_service or target_service != identity_service:
        return
    target_namespace, local_namespace = target.namespace.strip(), identity.namespace.strip()
    target_env, local_env = target.env.strip(), identity.env.strip()
    if target_namespace and local_namespace and target_namespace != local_namespace:
        return
    if target_env and local_env and target_env != local_env:
        return
    raise IdentityConflictError(
        "target conflicts with sidecar local service identity under cross-scope target mode"
    )


def validate_sidecar_target(target: ServiceRef, identity: LocalIdentity | None) -> None:
    """Reject targets that would route a sidecar back to its own service."""
    if identity is None:
        return
    mode = identity.target_mode.strip()
    if mode == TARGET_MODE_ALLOW_SAME_SERVICE:
        return
    if mode == TARGET_MODE_ALLOW_CROSS_SCOPE_SAME_SERVICE:
        _validate_cross_scope_target(target, identity)
        return

    target_service = target.service.strip()
    identity_service = identity.service.strip()
    if not target_service or not identity_service or target_service != identity_service:
        return
    if not _matches_local_dimension(target.namespace, identity.namespace):
        return
    if not _matches_local_dimension(target.env, identity.env):
        return
    raise IdentityConflictError("target conflicts with sidecar local service identity")