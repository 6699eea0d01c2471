from collections import Counter

import pytest

from meshplane.balancer import NoEndpointsError, Picker, RoundRobin
from meshplane.model import Endpoint, ServiceRef, ServiceSnapshot

ENDPOINTS = [
    Endpoint("10.0.0.1", 19090, 1),
    Endpoint("10.0.0.2", 19090, 1),
    Endpoint("10.0.0.3", 19090, 1),
]
ORDERS = ServiceSnapshot(
    service=ServiceRef(service="orders", namespace="default", env="dev"), endpoints=ENDPOINTS
)


def test_round_robin_cycles_in_order():
    balancer = RoundRobin()
    picks = [balancer.pick(ORDERS) for _ in range(4)]
    assert picks == [ENDPOINTS[0], ENDPOINTS[1], ENDPOINTS[2], ENDPOINTS[0]]


def test_round_robin_spreads_evenly():
    balancer = RoundRobin()
    counts = Counter(balancer.pick(ORDERS) for _ in range(3 * len(ENDPOINTS)))
    assert set(counts) == set(ENDPOINTS)
    assert set(counts.values()) == {3}


def test_cursors_are_independent_per_service():
    balancer = RoundRobin()
    users = ServiceSnapshot(
        service=ServiceRef(service="users", namespace="default", env="dev"), endpoints=ENDPOINTS
    )
    balancer.pick(ORDERS)
    balancer.pick(ORDERS)
    assert balancer.pick(users) == ENDPOINTS[0]


def test_cursors_are_independent_per_env():
    balancer = RoundRobin()
    prod = ServiceSnapshot(
        service=ServiceRef(service="orders", namespace="default", env="prod"), endpoints=ENDPOINTS
    )
    balancer.pick(ORDERS)
    assert balancer.pick(prod) == ENDPOINTS[0]
    assert balancer.pick(ORDERS) == ENDPOINTS[1]


def test_empty_snapshot_raises():
    balancer = RoundRobin()
    with pytest.raises(NoEndpointsError, match="no endpoints available"):
        balancer.pick(ServiceSnapshot(service=ORDERS.service))


def test_round_robin_is_a_picker():
    picker = RoundRobin()
    assert isinstance(picker, Picker)
    assert picker.pick(ORDERS) == ENDPOINTS[0]
    assert picker.pick(ORDERS) == ENDPOINTS[1]