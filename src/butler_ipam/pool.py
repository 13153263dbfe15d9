"""Per-pool allocator built on top of :class:`FreeListTracker`."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from .address import AddressRange
from .exceptions import (
    InvalidAddressError,
    OutOfRangeError,
    PoolConfigError,
    RangeConflictError,
)
from .freelist import FreeListTracker
from .resources import (
    IPAllocationType,
    NetworkPool,
    NetworkPoolSpec,
    NetworkPoolStatus,
)

LOG = logging.getLogger(__name__)


def allocatable_space(spec: NetworkPoolSpec) -> List[AddressRange]:
    """Validate ``spec`` and return the ranges tenants may be served from.

    The space is the pool CIDR minus every reserved range, narrowed to the
    ``tenantAllocation`` window when one is configured.  Reserved ranges that
    leave the CIDR or overlap each other are rejected instead of being
    silently clipped.
    """

    try:
        base = AddressRange.from_cidr(spec.cidr)
    except InvalidAddressError as exc:
        raise PoolConfigError(f"invalid pool CIDR: {exc}") from exc

    reserved: List[AddressRange] = []
    for entry in spec.reserved:
        try:
            current = AddressRange.from_cidr(entry.cidr)
        except InvalidAddressError as exc:
            raise PoolConfigError(f"invalid reserved range: {exc}") from exc
        if not base.contains(current):
            raise PoolConfigError(
                f"reserved range {entry.cidr} is outside pool CIDR {spec.cidr}"
            )
        clash = next((r for r in reserved if r.overlaps(current)), None)
        if clash is not None:
            raise PoolConfigError(
                f"reserved range {entry.cidr} overlaps reserved range {clash}"
            )
        reserved.append(current)

    window = base
    if spec.tenant_allocation is not None:
        try:
            window = AddressRange.from_addresses(
                spec.tenant_allocation.start, spec.tenant_allocation.end
            )
        except (InvalidAddressError, ValueError) as exc:
            raise PoolConfigError(f"invalid tenantAllocation window: {exc}") from exc
        if not base.contains(window):
            raise PoolConfigError(
                f"tenantAllocation window {window} is outside pool CIDR {spec.cidr}"
            )

    defaults = spec.defaults
    for label, value in (
        ("nodesPerTenant", defaults.nodes_per_tenant),
        ("lbPoolPerTenant", defaults.lb_pool_per_tenant),
    ):
        if value < 1:
            raise PoolConfigError(f"tenantAllocation.defaults.{label} must be at least 1")

    pieces = [window]
    for hole in reserved:
        pieces = [p for piece in pieces for p in piece.subtract(hole)]
    return pieces


class PoolAllocator:
    """Allocate and release address ranges within one ``NetworkPool``.

    All mutations must happen while holding :attr:`lock`; the public methods
    take it themselves, and callers that need a larger critical section (for
    example "allocate, re-check the request, then commit") can hold it around
    several calls because it is re-entrant.  Passing ``lock`` lets successive
    allocators for the same pool share one lock across rebuilds.
    """

    def __init__(self, pool: NetworkPool, lock: Optional[threading.RLock] = None) -> None:
        self._name = pool.name
        self._spec = pool.spec
        self._generation = pool.metadata.generation
        self._tracker = FreeListTracker(allocatable_space(pool.spec))
        self._allocations: Dict[AddressRange, int] = {}
        self.lock = lock or threading.RLock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def spec(self) -> NetworkPoolSpec:
        return self._spec

    @property
    def total_ips(self) -> int:
        return self._tracker.capacity

    @property
    def allocated_ips(self) -> int:
        return sum(r.size for r in self._allocations)

    @property
    def allocation_count(self) -> int:
        return len(self._allocations)

    def contains(self, target: AddressRange) -> bool:
        return self._tracker.in_universe(target)

    def is_free(self, target: AddressRange) -> bool:
        with self.lock:
            return self._tracker.is_free(target)

    def default_count(self, type_: IPAllocationType) -> int:
        defaults = self._spec.defaults
        if type_ is IPAllocationType.LOADBALANCER:
            return defaults.lb_pool_per_tenant
        return defaults.nodes_per_tenant

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------
    def allocate(self, count: int) -> AddressRange:
        with self.lock:
            chosen = self._tracker.find_fit(count)
            self._tracker.reserve(chosen)
            self._allocations[chosen] = chosen.size
        LOG.debug("Pool %s allocated %s (%d addresses)", self._name, chosen, count)
        return chosen

    def allocate_pinned(self, start_address: str, end_address: str) -> AddressRange:
        target = AddressRange.from_addresses(start_address, end_address)
        with self.lock:
            if not self._tracker.in_universe(target):
                raise OutOfRangeError(
                    f"pinned range {target} is outside the allocatable space "
                    f"of pool {self._name}"
                )
            if not self._tracker.is_free(target):
                raise RangeConflictError(
                    f"pinned range {target} overlaps allocated addresses "
                    f"in pool {self._name}"
                )
            self._tracker.reserve(target)
            self._allocations[target] = target.size
        LOG.debug("Pool %s reserved pinned range %s", self._name, target)
        return target

    def restore(self, target: AddressRange) -> None:
        """Re-reserve a range recorded on an existing allocation.

        Used when the allocator is rebuilt from persisted state.  Restoring a
        range that is already held is a no-op.
        """

        with self.lock:
            if target in self._allocations:
                return
            self._tracker.reserve(target)
            self._allocations[target] = target.size

    def release(self, target: AddressRange) -> bool:
        """Return ``target`` to the free list.

        Releasing a range that is already free is not an error; the method
        returns ``False`` in that case so callers can log it.  A range that
        spans several allocations releases each of them; one that cuts
        through an allocation raises :class:`RangeConflictError`.
        """

        with self.lock:
            if self._allocations.pop(target, None) is not None:
                self._tracker.release(target)
            else:
                overlapping = [r for r in self._allocations if r.overlaps(target)]
                partial = [r for r in overlapping if not target.contains(r)]
                if partial:
                    raise RangeConflictError(
                        f"range {target} only partly covers allocation {partial[0]} "
                        f"in pool {self._name}"
                    )
                if not overlapping:
                    LOG.debug("Pool %s: range %s already free", self._name, target)
                    return False
                for existing in overlapping:
                    del self._allocations[existing]
                    self._tracker.release(existing)
        LOG.debug("Pool %s released %s", self._name, target)
        return True

    def shrink(self, held: AddressRange, keep: Optional[AddressRange]) -> None:
        """Release the part of ``held`` not covered by ``keep``."""

        with self.lock:
            if held not in self._allocations:
                raise RangeConflictError(f"range {held} is not allocated in pool {self._name}")
            del self._allocations[held]
            if keep is not None:
                self._allocations[keep] = keep.size
                for piece in held.subtract(keep):
                    self._tracker.release(piece)
            else:
                self._tracker.release(held)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def recompute_status(self) -> NetworkPoolStatus:
        with self.lock:
            metrics = self._tracker.metrics()
            total = self._tracker.capacity
            return NetworkPoolStatus(
                total_ips=total,
                allocated_ips=total - metrics.total_free,
                available_ips=metrics.total_free,
                allocation_count=len(self._allocations),
                fragmentation_percent=metrics.fragmentation_percent,
                largest_free_block=metrics.largest_free_block,
                observed_generation=self._generation,
            )
