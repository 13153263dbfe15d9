import threading

import pytest

from butler_ipam.address import AddressRange
from butler_ipam.controller import (
    DEFAULT_FINALIZER,
    LABEL_GROWTH_PARENT,
    AllocationLifecycleController,
)
from butler_ipam.elastic import ServiceBindingTracker
from butler_ipam.exceptions import InvalidRequestError, PoolExhaustedError
from butler_ipam.resources import (
    IPAllocation,
    IPAllocationPhase,
    IPAllocationSpec,
    IPAllocationType,
    LoadBalancerConfig,
    LoadBalancerMode,
    LocalObjectReference,
    NamespacedObjectReference,
    NetworkPool,
    NetworkPoolSpec,
    ObjectMeta,
    PinnedIPRange,
    PoolRef,
    ProviderNetworkConfig,
    ReservedRange,
    TenantAllocationConfig,
    TenantAllocationDefaults,
    find_condition,
)
from butler_ipam.selector import PriorityPoolSelector
from butler_ipam.store import ObjectStore

NAMESPACE = "team-a"
FIXED_TIME = "2026-01-01T00:00:00Z"


def make_pool(name="pool-a", cidr="10.50.0.0/24", reserved=(), tenant=None):
    return NetworkPool(
        metadata=ObjectMeta(name=name),
        spec=NetworkPoolSpec(
            cidr=cidr,
            reserved=[ReservedRange(cidr=c) for c in reserved],
            tenant_allocation=tenant,
        ),
    )


def make_request(name, pool="pool-a", count=None, pinned=None, type_=IPAllocationType.NODES):
    return IPAllocation(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE),
        spec=IPAllocationSpec(
            pool_ref=LocalObjectReference(pool),
            tenant_cluster_ref=NamespacedObjectReference("cluster-1", NAMESPACE),
            type=type_,
            count=count,
            pinned_range=PinnedIPRange(*pinned) if pinned else None,
        ),
    )


def build_store(*pools):
    store = ObjectStore()
    for pool in pools:
        store.create(pool)
    return store


def build_controller(store, provider=None, **kwargs):
    return AllocationLifecycleController(store, provider, clock=lambda: FIXED_TIME, **kwargs)


def submit(store, controller, request):
    store.create(request)
    return controller.reconcile(request.metadata.name, NAMESPACE)


def fetch(store, name):
    return store.get(IPAllocation, name, NAMESPACE)


def pool_status(store, name="pool-a"):
    return store.get(NetworkPool, name).status


def ready_reason(obj):
    return find_condition(obj.status.conditions, "Ready").reason


def span(start, end):
    return AddressRange.from_addresses(start, end)


def recorded(store, name):
    status = fetch(store, name).status
    return span(status.start_address, status.end_address)


def assert_accounting(store, name="pool-a"):
    status = pool_status(store, name)
    assert status.allocated_ips + status.available_ips == status.total_ips


def build_elastic_provider(initial=2, growth=2):
    return ProviderNetworkConfig(
        pool_refs=(PoolRef("pool-a"),),
        load_balancer=LoadBalancerConfig(
            mode=LoadBalancerMode.ELASTIC, initial_pool_size=initial, growth_increment=growth
        ),
    )


class BoundAddresses(ServiceBindingTracker):
    """Reports a fixed set of bound addresses and records the tenants asked about."""

    def __init__(self, *addresses):
        self.addresses = set(addresses)
        self.tenants = []

    def addresses_in_use(self, tenant):
        self.tenants.append(tenant)
        return set(self.addresses)


def lb_addresses(count):
    return [f"10.60.0.{index}" for index in range(count)]


def test_allocate_and_release_end_to_end():
    store = build_store(make_pool(reserved=["10.50.0.0/28"]))
    controller = build_controller(store)
    controller.reconcile_pool("pool-a")
    assert pool_status(store).available_ips == 240

    result = submit(store, controller, make_request("c1-nodes", count=5))

    assert not result.requeue
    allocation = fetch(store, "c1-nodes")
    assert allocation.status.phase is IPAllocationPhase.ALLOCATED
    assert allocation.status.start_address == "10.50.0.16"
    assert allocation.status.end_address == "10.50.0.20"
    assert allocation.status.allocated_count == 5
    assert len(allocation.status.addresses) == 5
    assert allocation.status.allocated_by == "pool-a"
    assert allocation.status.allocated_at == FIXED_TIME
    assert ready_reason(allocation) == "Allocated"
    assert pool_status(store).allocated_ips == 5
    assert pool_status(store).available_ips == 235

    released = controller.release("c1-nodes", NAMESPACE)

    assert released.status.phase is IPAllocationPhase.RELEASED
    assert released.status.released_at == FIXED_TIME
    assert pool_status(store).available_ips == 240
    assert pool_status(store).allocated_ips == 0


def test_reconcile_is_idempotent():
    store = build_store(make_pool())
    controller = build_controller(store)
    submit(store, controller, make_request("c1-nodes", count=5))
    first = fetch(store, "c1-nodes").status

    controller.reconcile("c1-nodes", NAMESPACE)
    controller.reconcile("c1-nodes", NAMESPACE)

    assert fetch(store, "c1-nodes").status.start_address == first.start_address
    assert pool_status(store).allocated_ips == 5


def test_recorded_range_is_adopted_after_restart():
    store = build_store(make_pool())
    store.create(make_request("c1-nodes", count=5))
    allocation = fetch(store, "c1-nodes")
    allocation.status.phase = IPAllocationPhase.PENDING
    allocation.status.start_address = "10.50.0.40"
    allocation.status.end_address = "10.50.0.44"
    allocation.status.allocated_by = "pool-a"
    store.update_status(allocation)

    controller = build_controller(store)
    controller.reconcile("c1-nodes", NAMESPACE)

    allocation = fetch(store, "c1-nodes")
    assert allocation.status.phase is IPAllocationPhase.ALLOCATED
    assert allocation.status.start_address == "10.50.0.40"
    assert pool_status(store).allocated_ips == 5
    assert not controller.pool_allocator("pool-a").is_free(
        AddressRange.from_addresses("10.50.0.40", "10.50.0.44")
    )


def test_exhausted_pool_falls_back_by_priority():
    store = build_store(make_pool("A", "10.0.0.0/30"), make_pool("B", "10.1.0.0/24"))
    provider = ProviderNetworkConfig(pool_refs=(PoolRef("A", 0), PoolRef("B", 1)))
    controller = build_controller(store, provider)
    submit(store, controller, make_request("fill", pool="A", pinned=("10.0.0.0", "10.0.0.3")))

    submit(store, controller, make_request("c1-nodes", pool="A", count=2))

    allocation = fetch(store, "c1-nodes")
    assert allocation.status.phase is IPAllocationPhase.ALLOCATED
    assert allocation.status.allocated_by == "B"
    assert allocation.status.start_address == "10.1.0.0"
    assert pool_status(store, "A").available_ips == 0
    assert pool_status(store, "B").allocated_ips == 2


def test_pool_outside_provider_config_has_no_fallback():
    store = build_store(make_pool("A", "10.0.0.0/30"), make_pool("B", "10.1.0.0/24"))
    provider = ProviderNetworkConfig(pool_refs=(PoolRef("B", 0),))
    controller = build_controller(store, provider)

    submit(store, controller, make_request("c1-nodes", pool="A", count=8))

    assert fetch(store, "c1-nodes").status.phase is IPAllocationPhase.PENDING


def test_pinned_conflict_fails_permanently():
    store = build_store(make_pool(cidr="10.0.0.0/24"))
    controller = build_controller(store)
    submit(store, controller, make_request("holder", pinned=("10.0.0.8", "10.0.0.8")))

    result = submit(store, controller, make_request("clash", pinned=("10.0.0.5", "10.0.0.10")))

    allocation = fetch(store, "clash")
    assert allocation.status.phase is IPAllocationPhase.FAILED
    assert ready_reason(allocation) == "RangeConflict"
    assert not allocation.status.has_range
    assert not result.requeue

    controller.reconcile("clash", NAMESPACE)
    assert fetch(store, "clash").status.phase is IPAllocationPhase.FAILED
    assert pool_status(store).allocated_ips == 1


def test_pinned_range_outside_pool_fails():
    store = build_store(make_pool(cidr="10.0.0.0/24"))
    controller = build_controller(store)

    submit(store, controller, make_request("far", pinned=("10.9.0.1", "10.9.0.2")))

    allocation = fetch(store, "far")
    assert allocation.status.phase is IPAllocationPhase.FAILED
    assert ready_reason(allocation) == "OutOfRange"


def test_exhaustion_is_transient_and_backs_off():
    store = build_store(make_pool(cidr="10.0.0.0/30"))
    controller = build_controller(store)

    first = submit(store, controller, make_request("big", count=8))
    second = controller.reconcile("big", NAMESPACE)

    allocation = fetch(store, "big")
    assert allocation.status.phase is IPAllocationPhase.PENDING
    assert ready_reason(allocation) == "PoolExhausted"
    assert first.requeue_after == 1.0
    assert second.requeue_after == 2.0

    pool = store.get(NetworkPool, "pool-a")
    pool.spec = NetworkPoolSpec(cidr="10.0.0.0/24")
    store.update(pool)

    assert not controller.reconcile("big", NAMESPACE).requeue
    allocation = fetch(store, "big")
    assert allocation.status.phase is IPAllocationPhase.ALLOCATED
    assert controller.backoff.failures("team-a/big") == 0
    assert pool_status(store).total_ips == 256


def test_released_space_is_reused():
    store = build_store(make_pool(cidr="10.0.0.0/26"))
    controller = build_controller(store)
    for name in ("r1", "r2", "r3"):
        submit(store, controller, make_request(name, count=10))
    freed = fetch(store, "r2").status

    controller.release("r2", NAMESPACE)
    submit(store, controller, make_request("r4", count=10))

    reused = fetch(store, "r4").status
    assert (reused.start_address, reused.end_address) == (freed.start_address, freed.end_address)


def test_deletion_releases_then_removes_finalizer():
    store = build_store(make_pool())
    controller = build_controller(store)
    submit(store, controller, make_request("c1-nodes", count=5))
    assert DEFAULT_FINALIZER in fetch(store, "c1-nodes").metadata.finalizers

    assert store.delete(IPAllocation, "c1-nodes", NAMESPACE) is False
    controller.reconcile("c1-nodes", NAMESPACE)

    assert not store.exists(IPAllocation, "c1-nodes", NAMESPACE)
    assert pool_status(store).allocated_ips == 0
    assert pool_status(store).available_ips == 256


def test_deletion_during_allocation_returns_range():
    class DeletingSelector(PriorityPoolSelector):
        def select(self, candidates, **kwargs):
            selection = super().select(candidates, **kwargs)
            store.delete(IPAllocation, "c1-nodes", NAMESPACE)
            return selection

    store = build_store(make_pool())
    controller = build_controller(store, selector=DeletingSelector())

    submit(store, controller, make_request("c1-nodes", count=5))

    allocation = fetch(store, "c1-nodes")
    assert allocation.metadata.deletion_timestamp
    assert not allocation.status.has_range
    assert controller.pool_allocator("pool-a").recompute_status().allocated_ips == 0

    controller.reconcile("c1-nodes", NAMESPACE)
    assert not store.exists(IPAllocation, "c1-nodes", NAMESPACE)


def test_missing_pool_is_retried():
    store = ObjectStore()
    controller = build_controller(store)

    result = submit(store, controller, make_request("c1-nodes", pool="later", count=2))

    assert result.requeue
    assert ready_reason(fetch(store, "c1-nodes")) == "PoolNotFound"

    store.create(make_pool("later"))
    controller.reconcile("c1-nodes", NAMESPACE)
    assert fetch(store, "c1-nodes").status.phase is IPAllocationPhase.ALLOCATED


def test_invalid_request_fails():
    store = build_store(make_pool())
    controller = build_controller(store)
    request = make_request("bad", count=2, pinned=("10.50.0.1", "10.50.0.2"))

    submit(store, controller, request)

    allocation = fetch(store, "bad")
    assert allocation.status.phase is IPAllocationPhase.FAILED
    assert ready_reason(allocation) == "InvalidRequest"


def test_invalid_pool_reports_condition():
    store = build_store(make_pool(reserved=["10.50.0.0/28", "10.50.0.8/29"]))
    controller = build_controller(store)

    controller.reconcile_pool("pool-a")

    condition = find_condition(pool_status(store).conditions, "Ready")
    assert condition.status == "False"
    assert condition.reason == "InvalidConfig"


def test_default_counts_come_from_pool_and_provider():
    defaults = TenantAllocationDefaults(nodes_per_tenant=3, lb_pool_per_tenant=6)
    tenant = TenantAllocationConfig(start="10.50.0.0", end="10.50.0.255", defaults=defaults)
    store = build_store(make_pool(tenant=tenant))
    controller = build_controller(store)

    submit(store, controller, make_request("nodes", count=None))
    submit(store, controller, make_request("lb", type_=IPAllocationType.LOADBALANCER))

    assert fetch(store, "nodes").status.allocated_count == 3
    assert fetch(store, "lb").status.allocated_count == 6

    provider = ProviderNetworkConfig(
        pool_refs=(PoolRef("pool-a"),),
        load_balancer=LoadBalancerConfig(mode=LoadBalancerMode.STATIC, default_pool_size=4),
    )
    with_provider = build_controller(store, provider)
    submit(store, with_provider, make_request("lb-2", type_=IPAllocationType.LOADBALANCER))
    assert fetch(store, "lb-2").status.allocated_count == 4


def test_accounting_holds_after_mixed_operations():
    store = build_store(make_pool(reserved=["10.50.0.0/28"]))
    controller = build_controller(store)
    for index, count in enumerate([3, 9, 1, 20, 4]):
        submit(store, controller, make_request(f"r{index}", count=count))
    controller.release("r1", NAMESPACE)
    controller.release("r3", NAMESPACE)
    submit(store, controller, make_request("r5", count=7))

    status = pool_status(store)
    assert status.allocated_ips + status.available_ips == status.total_ips
    assert status.allocated_ips == 3 + 1 + 4 + 7

    held = [
        AddressRange.from_addresses(a.status.start_address, a.status.end_address)
        for a in store.list(IPAllocation)
        if a.is_active
    ]
    for index, first in enumerate(held):
        for second in held[index + 1:]:
            assert not first.overlaps(second)


def test_concurrent_requests_never_overlap():
    store = build_store(make_pool(cidr="10.70.0.0/24"))
    controller = build_controller(store)
    errors = []

    def worker(prefix):
        try:
            for index in range(5):
                name = f"{prefix}-{index}"
                store.create(make_request(name, count=3))
                while controller.reconcile(name, NAMESPACE).requeue:
                    pass
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(f"t{n}",)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    allocations = store.list(IPAllocation)
    assert len(allocations) == 40
    assert all(a.status.phase is IPAllocationPhase.ALLOCATED for a in allocations)
    ranges = [
        AddressRange.from_addresses(a.status.start_address, a.status.end_address)
        for a in allocations
    ]
    for index, first in enumerate(ranges):
        for second in ranges[index + 1:]:
            assert not first.overlaps(second)

    controller.reconcile_pool("pool-a")
    assert pool_status(store).allocated_ips == 120


def test_pool_defaults_below_one_are_rejected():
    defaults = TenantAllocationDefaults(nodes_per_tenant=0)
    tenant = TenantAllocationConfig(start="10.50.0.0", end="10.50.0.255", defaults=defaults)
    store = build_store(make_pool(tenant=tenant))
    controller = build_controller(store)

    controller.reconcile_pool("pool-a")
    assert ready_reason(store.get(NetworkPool, "pool-a")) == "InvalidConfig"

    result = submit(store, controller, make_request("nodes"))

    allocation = fetch(store, "nodes")
    assert result.requeue
    assert allocation.status.phase is IPAllocationPhase.PENDING
    assert ready_reason(allocation) == "InvalidConfig"
    assert not allocation.status.has_range


def test_pool_spec_change_keeps_live_allocations():
    store = build_store(make_pool())
    controller = build_controller(store)
    submit(store, controller, make_request("low", pinned=("10.50.0.10", "10.50.0.19")))
    submit(store, controller, make_request("high", pinned=("10.50.0.200", "10.50.0.209")))

    pool = store.get(NetworkPool, "pool-a")
    pool.spec.reserved = [ReservedRange(cidr="10.50.0.0/29")]
    store.update(pool)
    controller.reconcile_pool("pool-a")

    allocator = controller.pool_allocator("pool-a")
    assert allocator.generation == 2
    assert not allocator.is_free(recorded(store, "low"))
    assert not allocator.is_free(recorded(store, "high"))
    status = pool_status(store)
    assert status.total_ips == 248
    assert status.allocated_ips == 20
    assert status.observed_generation == 2
    assert_accounting(store)

    submit(store, controller, make_request("next", count=5))

    fresh = recorded(store, "next")
    assert not fresh.overlaps(recorded(store, "low"))
    assert not fresh.overlaps(recorded(store, "high"))
    assert pool_status(store).allocated_ips == 25
    assert_accounting(store)


def test_pool_spec_change_skips_ranges_that_no_longer_fit():
    store = build_store(make_pool())
    controller = build_controller(store)
    submit(store, controller, make_request("kept", pinned=("10.50.0.100", "10.50.0.109")))
    submit(store, controller, make_request("stranded", pinned=("10.50.0.10", "10.50.0.19")))

    pool = store.get(NetworkPool, "pool-a")
    pool.spec.reserved = [ReservedRange(cidr="10.50.0.0/27")]
    store.update(pool)
    controller.reconcile_pool("pool-a")

    status = pool_status(store)
    assert status.total_ips == 224
    assert status.allocated_ips == 10
    assert_accounting(store)
    assert fetch(store, "stranded").status.phase is IPAllocationPhase.ALLOCATED
    assert not controller.pool_allocator("pool-a").is_free(recorded(store, "kept"))

    released = controller.release("stranded", NAMESPACE)

    assert released.status.phase is IPAllocationPhase.RELEASED
    assert pool_status(store).allocated_ips == 10
    assert_accounting(store)


def test_pool_rebuild_during_allocation_never_double_books():
    class RebuildingSelector(PriorityPoolSelector):
        rebuilt = False

        def select(self, candidates, **kwargs):
            selection = super().select(candidates, **kwargs)
            if not self.rebuilt:
                self.rebuilt = True
                pool = store.get(NetworkPool, "pool-a")
                pool.spec.reserved = [ReservedRange(cidr="10.50.0.240/28")]
                store.update(pool)
                submit(store, controller, make_request("r2", count=5))
            return selection

    store = build_store(make_pool())
    controller = build_controller(store, selector=RebuildingSelector())

    result = submit(store, controller, make_request("r1", count=5))

    assert result.requeue_after == 0.0
    assert not fetch(store, "r1").status.has_range
    assert fetch(store, "r2").status.phase is IPAllocationPhase.ALLOCATED

    assert not controller.reconcile("r1", NAMESPACE).requeue

    assert fetch(store, "r1").status.phase is IPAllocationPhase.ALLOCATED
    assert not recorded(store, "r1").overlaps(recorded(store, "r2"))
    status = pool_status(store)
    assert status.total_ips == 240
    assert status.allocated_ips == 10
    assert_accounting(store)


def test_elastic_growth_extends_the_load_balancer_allocation():
    store = build_store(make_pool(cidr="10.60.0.0/28"))
    controller = build_controller(store, build_elastic_provider())
    submit(store, controller, make_request("lb", type_=IPAllocationType.LOADBALANCER))
    assert recorded(store, "lb") == span("10.60.0.0", "10.60.0.1")

    tracker = BoundAddresses(*lb_addresses(2))
    assert controller.reconcile_load_balancer("lb", NAMESPACE, tracker) == 4

    assert tracker.tenants == ["team-a/cluster-1"]
    assert pool_status(store).allocated_ips == 4
    block = fetch(store, "lb-grow-1")
    assert block.status.phase is IPAllocationPhase.ALLOCATED
    assert block.status.allocated_by == "pool-a"
    assert block.metadata.labels[LABEL_GROWTH_PARENT] == "lb"
    assert DEFAULT_FINALIZER in block.metadata.finalizers
    assert recorded(store, "lb-grow-1") == span("10.60.0.2", "10.60.0.3")

    # A fresh controller rebuilds the same picture from the store.
    restarted = build_controller(store, build_elastic_provider())
    allocator = restarted.pool_allocator("pool-a")
    assert allocator.allocated_ips == 4
    assert not allocator.is_free(span("10.60.0.2", "10.60.0.3"))

    store.delete(IPAllocation, "lb", NAMESPACE)
    restarted.reconcile("lb", NAMESPACE)

    assert not store.exists(IPAllocation, "lb", NAMESPACE)
    assert not store.exists(IPAllocation, "lb-grow-1", NAMESPACE)
    assert pool_status(store).allocated_ips == 0
    assert_accounting(store)


def test_elastic_shrink_trims_unbound_growth_addresses():
    store = build_store(make_pool(cidr="10.60.0.0/28"))
    controller = build_controller(store, build_elastic_provider())
    submit(store, controller, make_request("lb", type_=IPAllocationType.LOADBALANCER))
    controller.reconcile_load_balancer("lb", NAMESPACE, BoundAddresses(*lb_addresses(2)))
    assert controller.reconcile_load_balancer(
        "lb", NAMESPACE, BoundAddresses(*lb_addresses(4))
    ) == 6

    entitlement = controller.reconcile_load_balancer(
        "lb", NAMESPACE, BoundAddresses("10.60.0.0", "10.60.0.2")
    )

    assert entitlement == 3
    assert not store.exists(IPAllocation, "lb-grow-2", NAMESPACE)
    trimmed = fetch(store, "lb-grow-1").status
    assert (trimmed.start_address, trimmed.end_address) == ("10.60.0.2", "10.60.0.2")
    assert trimmed.allocated_count == 1
    assert recorded(store, "lb") == span("10.60.0.0", "10.60.0.1")
    assert pool_status(store).allocated_ips == 3
    assert_accounting(store)

    # Nothing bound: growth space goes back, the initial block stays.
    assert controller.reconcile_load_balancer("lb", NAMESPACE, BoundAddresses()) == 2
    assert [a.name for a in store.list(IPAllocation)] == ["lb"]
    assert pool_status(store).allocated_ips == 2


def test_elastic_growth_stops_at_pool_exhaustion():
    store = build_store(make_pool(cidr="10.60.0.0/30"))
    controller = build_controller(store, build_elastic_provider())
    submit(store, controller, make_request("lb", type_=IPAllocationType.LOADBALANCER))
    controller.reconcile_load_balancer("lb", NAMESPACE, BoundAddresses(*lb_addresses(2)))

    with pytest.raises(PoolExhaustedError):
        controller.reconcile_load_balancer("lb", NAMESPACE, BoundAddresses(*lb_addresses(4)))

    assert not store.exists(IPAllocation, "lb-grow-2", NAMESPACE)
    assert pool_status(store).allocated_ips == 4


def test_static_load_balancer_pool_is_not_resized():
    provider = ProviderNetworkConfig(
        pool_refs=(PoolRef("pool-a"),),
        load_balancer=LoadBalancerConfig(mode=LoadBalancerMode.STATIC, default_pool_size=4),
    )
    store = build_store(make_pool(cidr="10.60.0.0/28"))
    controller = build_controller(store, provider)
    submit(store, controller, make_request("lb", type_=IPAllocationType.LOADBALANCER))
    tracker = BoundAddresses(*lb_addresses(4))

    assert controller.reconcile_load_balancer("lb", NAMESPACE, tracker) == 4

    assert tracker.tenants == []
    assert [a.name for a in store.list(IPAllocation)] == ["lb"]
    assert pool_status(store).allocated_ips == 4


def test_load_balancer_resize_needs_a_load_balancer_allocation():
    store = build_store(make_pool(cidr="10.60.0.0/28"))
    controller = build_controller(store, build_elastic_provider())
    submit(store, controller, make_request("nodes", count=2))

    with pytest.raises(InvalidRequestError):
        controller.reconcile_load_balancer("nodes", NAMESPACE, BoundAddresses())
