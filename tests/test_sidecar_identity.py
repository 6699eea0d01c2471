import copy
import dataclasses

import pytest

from meshplane.messages import Caller, InvocationContext, InvokeTarget, MetadataEntry, UnaryInvokeRequest
from meshplane.model import ServiceRef
from meshplane.sidecar_identity import (
    METADATA_SUBJECT,
    METADATA_TRUST,
    TARGET_MODE_ALLOW_CROSS_SCOPE_SAME_SERVICE,
    TARGET_MODE_ALLOW_SAME_SERVICE,
    TARGET_MODE_UPSTREAM_ONLY,
    TRUST_LOCAL,
    IdentityConflictError,
    LocalIdentity,
    apply_local_identity,
    normalize_local_identity,
    rewrite_original_identity_trust,
    validate_sidecar_target,
)

NAMESPACE = "/microservice/lhdht"
IDENTITY = LocalIdentity(
    app_id="config",
    service="config",
    namespace=NAMESPACE,
    env="dev",
    target_mode=TARGET_MODE_UPSTREAM_ONLY,
)


def _request(**kwargs) -> UnaryInvokeRequest:
    return UnaryInvokeRequest(
        target=InvokeTarget(service="orders"),
        method="/acme.orders.v1.OrderService/GetOrder",
        **kwargs,
    )


def _conflicts(target: ServiceRef, identity: LocalIdentity) -> bool:
    try:
        validate_sidecar_target(target, identity)
    except IdentityConflictError:
        return True
    return False


def test_normalize_trims_and_fills_defaults():
    identity = normalize_local_identity(
        LocalIdentity(service="  config ", namespace=f" {NAMESPACE} ", env=" dev ")
    )
    assert identity.service == "config"
    assert identity.app_id == "config"
    assert identity.namespace == NAMESPACE
    assert identity.env == "dev"
    assert identity.target_mode == TARGET_MODE_UPSTREAM_ONLY


def test_normalize_lowercases_target_mode():
    identity = normalize_local_identity(
        LocalIdentity(service="config", target_mode=f" {TARGET_MODE_ALLOW_SAME_SERVICE.upper()} ")
    )
    assert identity.target_mode == TARGET_MODE_ALLOW_SAME_SERVICE


def test_apply_fills_caller_and_target():
    req = _request()
    apply_local_identity(req, IDENTITY)
    assert req.context.caller == Caller(
        app_id=IDENTITY.app_id, service=IDENTITY.service, namespace=NAMESPACE, env=IDENTITY.env
    )
    assert req.target.namespace == NAMESPACE
    assert req.target.env == IDENTITY.env
    assert req.context.trace_id.startswith(f"{IDENTITY.service}-")


def test_apply_keeps_explicit_values():
    req = _request(context=InvocationContext(caller=Caller(app_id="custom-app"), trace_id="trace-1"))
    req.target.env = "prod"
    apply_local_identity(req, IDENTITY)
    assert req.context.caller.app_id == "custom-app"
    assert req.context.trace_id == "trace-1"
    assert req.target.env == "prod"


@pytest.mark.parametrize(
    ("caller", "field_name"),
    [
        (Caller(service="other-service"), "context.caller.service"),
        (Caller(namespace="/other"), "context.caller.namespace"),
        (Caller(env="prod"), "context.caller.env"),
    ],
)
def test_apply_rejects_conflicting_caller(caller, field_name):
    req = _request(context=InvocationContext(caller=caller))
    with pytest.raises(IdentityConflictError, match=field_name):
        apply_local_identity(req, IDENTITY)


def test_apply_without_identity_leaves_request_untouched():
    req = _request()
    before = copy.deepcopy(req)
    apply_local_identity(req, None)
    assert req == before


def test_trusted_injector_marks_original_identity_local():
    identity = dataclasses.replace(IDENTITY, trusted_original_identity_injector=True)
    subject = MetadataEntry(METADATA_SUBJECT, ["alice@example.com"])
    req = _request(context=InvocationContext(metadata=[subject]))
    apply_local_identity(req, identity)
    assert req.context.metadata == [subject, MetadataEntry(METADATA_TRUST, [TRUST_LOCAL])]


def test_untrusted_injector_drops_spoofed_trust():
    subject = MetadataEntry(METADATA_SUBJECT, ["alice@example.com"])
    spoofed = MetadataEntry(METADATA_TRUST, [TRUST_LOCAL])
    req = _request(context=InvocationContext(metadata=[subject, spoofed]))
    apply_local_identity(req, IDENTITY)
    assert req.context.metadata == [subject]


def test_rewrite_drops_trust_key_case_insensitively():
    entries = [MetadataEntry(f" {METADATA_TRUST.upper()} ", [TRUST_LOCAL]), None]
    assert rewrite_original_identity_trust(entries, IDENTITY) == []


def test_rewrite_adds_nothing_without_original_identity():
    identity = dataclasses.replace(IDENTITY, trusted_original_identity_injector=True)
    entries = [MetadataEntry("x-request-id", ["r-1"])]
    assert rewrite_original_identity_trust(entries, identity) == entries


def test_upstream_only_rejects_self_target():
    assert _conflicts(ServiceRef(service="config"), IDENTITY) is True
    assert _conflicts(ServiceRef(service="config", namespace=NAMESPACE, env="dev"), IDENTITY) is True


def test_upstream_only_allows_other_targets():
    assert _conflicts(ServiceRef(service="orders"), IDENTITY) is False
    assert _conflicts(ServiceRef(service="config", env="prod"), IDENTITY) is False


def test_allow_same_service_mode_accepts_self_target():
    identity = dataclasses.replace(IDENTITY, target_mode=TARGET_MODE_ALLOW_SAME_SERVICE)
    assert _conflicts(ServiceRef(service="config"), identity) is False


def test_cross_scope_mode():
    identity = dataclasses.replace(IDENTITY, target_mode=TARGET_MODE_ALLOW_CROSS_SCOPE_SAME_SERVICE)
    assert _conflicts(ServiceRef(service="config", env="prod"), identity) is False
    assert _conflicts(ServiceRef(service="config", namespace="/other"), identity) is False
    assert _conflicts(ServiceRef(service="config"), identity) is True
    with pytest.raises(IdentityConflictError, match="cross-scope"):
        validate_sidecar_target(ServiceRef(service="config", namespace=NAMESPACE, env="dev"), identity)


def test_no_identity_accepts_any_target():
    assert _conflicts(ServiceRef(service="config"), None) is False