import pytest

from butler_ipam.exceptions import OutOfRangeError, PoolExhaustedError, RangeConflictError
from butler_ipam.pool import PoolAllocator
from butler_ipam.resources import NetworkPool, NetworkPoolSpec, ObjectMeta, PinnedIPRange
from butler_ipam.selector import PriorityPoolSelector


def build_allocator(name: str, cidr: str) -> PoolAllocator:
    return PoolAllocator(
        NetworkPool(metadata=ObjectMeta(name=name, generation=1), spec=NetworkPoolSpec(cidr=cidr))
    )


def build_pools():
    small = build_allocator("a", "10.0.0.0/30")
    large = build_allocator("b", "10.1.0.0/24")
    return small, large


def test_falls_back_to_next_priority_when_exhausted():
    small, large = build_pools()
    small.allocate(4)

    selection = PriorityPoolSelector().select([(small, 0), (large, 1)], count=2)

    assert selection.pool_name == "b"
    assert selection.range.start_address == "10.1.0.0"


def test_lower_priority_value_wins_regardless_of_order():
    small, large = build_pools()

    selection = PriorityPoolSelector().select([(large, 1), (small, 0)], count=2)

    assert selection.pool_name == "a"


def test_equal_priorities_keep_declaration_order():
    small, large = build_pools()

    selection = PriorityPoolSelector().select([(large, 1), (small, 1)], count=2)

    assert selection.pool_name == "b"


def test_all_pools_exhausted_lists_attempted_pools():
    small, large = build_pools()
    small.allocate(4)

    with pytest.raises(PoolExhaustedError) as exc:
        PriorityPoolSelector().select([(small, 0), (large, 1)], count=512)

    assert exc.value.attempted == ["a", "b"]
    assert exc.value.transient


def test_pinned_range_goes_to_containing_pool():
    small, large = build_pools()
    small.allocate(4)

    selection = PriorityPoolSelector().select(
        [(small, 0), (large, 1)], pinned=PinnedIPRange("10.1.0.10", "10.1.0.12")
    )

    assert selection.pool_name == "b"
    assert selection.range.size == 3


def test_pinned_conflict_does_not_fall_back():
    small, large = build_pools()
    small.allocate_pinned("10.0.0.1", "10.0.0.1")

    with pytest.raises(RangeConflictError):
        PriorityPoolSelector().select(
            [(small, 0), (large, 1)], pinned=PinnedIPRange("10.0.0.0", "10.0.0.2")
        )

    assert large.recompute_status().allocated_ips == 0


def test_pinned_outside_every_pool():
    small, large = build_pools()

    with pytest.raises(OutOfRangeError):
        PriorityPoolSelector().select(
            [(small, 0), (large, 1)], pinned=PinnedIPRange("192.168.0.1", "192.168.0.2")
        )


def test_selection_is_deterministic():
    results = []
    for _ in range(3):
        small, large = build_pools()
        small.allocate(3)
        results.append(PriorityPoolSelector().select([(small, 0), (large, 0)], count=2))

    assert len(set(results)) == 1


def test_count_and_pinned_are_mutually_exclusive():
    small, _ = build_pools()
    selector = PriorityPoolSelector()

    with pytest.raises(ValueError):
        selector.select([(small, 0)], count=1, pinned=PinnedIPRange("10.0.0.0", "10.0.0.0"))
    with pytest.raises(ValueError):
        selector.select([(small, 0)])
