"""Reconcile ``IPAllocation`` requests against ``NetworkPool`` state.

The controller is the only layer that decides whether an error is retried or
terminal and the only one that writes user-visible status.  It drives every
allocation through ``Pending -> Allocated | Failed`` and ``Allocated ->
Released`` and is safe to call repeatedly for the same key: a request that
already has a recorded range is never allocated twice.

Lock order is: load-balancer lock, pool cache lock, per-pool lock, store.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .address import AddressRange
from .elastic import ElasticSizer, ServiceBindingTracker
from .exceptions import (
    ConflictError,
    IPAMError,
    InvalidRequestError,
    NotFoundError,
    PoolConfigError,
    PoolNotFoundError,
    RangeConflictError,
)
from .pool import PoolAllocator
from .resources import (
    CONDITION_READY,
    Condition,
    IPAllocation,
    IPAllocationPhase,
    IPAllocationSpec,
    IPAllocationType,
    LoadBalancerMode,
    NetworkPool,
    ObjectMeta,
    PoolRef,
    ProviderNetworkConfig,
    set_condition,
    utcnow,
)
from .selector import Candidate, PriorityPoolSelector, Selection
from .store import ObjectStore

LOG = logging.getLogger(__name__)

DEFAULT_FINALIZER = "ipam.butlerlabs.dev/release"

# Labels carried by the growth blocks of an elastic load-balancer allocation.
LABEL_GROWTH_PARENT = "ipam.butlerlabs.dev/growth-parent"
LABEL_GROWTH_SEQUENCE = "ipam.butlerlabs.dev/growth-sequence"

# Attempts made to write pool status before giving up until the next event.
STATUS_WRITE_ATTEMPTS = 5


@dataclass(frozen=True)
class Result:
    """Outcome of a reconcile call; ``requeue_after`` is in seconds."""

    requeue_after: Optional[float] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class Backoff:
    """Per-key exponential backoff for transient failures."""

    def __init__(self, base: float = 1.0, maximum: float = 300.0) -> None:
        self._base = base
        self._maximum = maximum
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()

    def next(self, key: str) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self._base * (2**failures), self._maximum)

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


def allocation_key(name: str, namespace: str = "") -> str:
    return f"{namespace}/{name}"


def recorded_range(allocation: IPAllocation) -> AddressRange:
    status = allocation.status
    return AddressRange.from_addresses(status.start_address, status.end_address)


def is_growth_block(allocation: IPAllocation) -> bool:
    return LABEL_GROWTH_PARENT in allocation.metadata.labels


class AllocationLifecycleController:
    """Drive ``IPAllocation`` objects through their phases."""

    def __init__(
        self,
        store: ObjectStore,
        provider: Optional[ProviderNetworkConfig] = None,
        *,
        finalizer: str = DEFAULT_FINALIZER,
        backoff: Optional[Backoff] = None,
        selector: Optional[PriorityPoolSelector] = None,
        clock: Callable[[], str] = utcnow,
    ) -> None:
        self._store = store
        self._provider = provider
        self._finalizer = finalizer
        self._backoff = backoff or Backoff()
        self._selector = selector or PriorityPoolSelector()
        self._clock = clock
        self._pools: Dict[str, PoolAllocator] = {}
        self._pool_locks: Dict[str, threading.RLock] = {}
        self._pools_lock = threading.Lock()
        self._lb_lock = threading.RLock()
        self._sizer: Optional[ElasticSizer] = None
        if provider is not None and provider.load_balancer.mode is LoadBalancerMode.ELASTIC:
            self._sizer = ElasticSizer(provider.load_balancer)

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    # ------------------------------------------------------------------
    # Pool cache
    # ------------------------------------------------------------------
    def pool_allocator(self, name: str) -> PoolAllocator:
        """Return the allocator for ``name``, rebuilding it on spec changes.

        Every allocator built for the same pool shares one lock, and the
        rebuild swaps the cached allocator while holding it.  Work that has to
        land in the current allocator checks :meth:`_ensure_current` under
        that lock.
        """

        try:
            pool = self._store.get(NetworkPool, name)
        except NotFoundError as exc:
            raise PoolNotFoundError(f"NetworkPool {name!r} does not exist") from exc

        with self._pools_lock:
            current = self._pools.get(name)
            # A stale read must never roll the allocator back.
            if current is not None and pool.metadata.generation <= current.generation:
                return current
            lock = self._pool_locks.setdefault(name, threading.RLock())
            with lock:
                allocator = self._build_allocator(pool, lock)
                self._pools[name] = allocator
            return allocator

    def _build_allocator(self, pool: NetworkPool, lock: threading.RLock) -> PoolAllocator:
        allocator = PoolAllocator(pool, lock)
        restored = 0
        for allocation in self._store.list(IPAllocation):
            if not allocation.is_active or allocation.status.allocated_by != pool.name:
                continue
            target = recorded_range(allocation)
            try:
                allocator.restore(target)
            except RangeConflictError as exc:
                LOG.warning(
                    "Pool %s: recorded range %s of %s no longer fits the pool: %s",
                    pool.name,
                    target,
                    allocation_key(allocation.name, allocation.metadata.namespace),
                    exc,
                )
                continue
            restored += 1
        LOG.info(
            "Built allocator for pool %s (generation %d, %d ranges restored)",
            pool.name,
            pool.metadata.generation,
            restored,
        )
        return allocator

    def _ensure_current(self, allocator: PoolAllocator) -> None:
        # Callers hold allocator.lock, which rebuilds of this pool also take.
        if self._pools.get(allocator.name) is not allocator:
            raise ConflictError(f"pool {allocator.name} was rebuilt during the operation")

    def _resolve(self, refs: Sequence[PoolRef], required: Optional[str]) -> List[Candidate]:
        candidates: List[Candidate] = []
        for ref in refs:
            try:
                candidates.append((self.pool_allocator(ref.name), ref.priority))
            except (PoolNotFoundError, PoolConfigError) as exc:
                if ref.name == required:
                    raise
                LOG.warning("Skipping candidate pool %s: %s", ref.name, exc)
        return candidates

    def candidates_for(self, allocation: IPAllocation) -> List[Candidate]:
        """Pools a request may be served from, with their priorities.

        When the provider configuration lists the requested pool, the whole
        provider list takes part so exhausted pools fall back to the next
        priority; otherwise only the named pool is used.
        """

        name = allocation.spec.pool_ref.name
        if self._provider is not None and self._provider.includes(name):
            refs: Sequence[PoolRef] = self._provider.pool_refs
        else:
            refs = [PoolRef(name=name, priority=0)]
        return self._resolve(refs, required=name)

    def requested_count(self, allocation: IPAllocation) -> int:
        """Size of a count request, applying pool and provider defaults."""

        spec = allocation.spec
        if spec.count is not None:
            return spec.count
        if spec.type is IPAllocationType.LOADBALANCER and self._provider is not None:
            if self._sizer is not None:
                return self._sizer.initial_count()
            return self._provider.load_balancer.default_pool_size
        return self.pool_allocator(spec.pool_ref.name).default_count(spec.type)

    # ------------------------------------------------------------------
    # IPAllocation reconciliation
    # ------------------------------------------------------------------
    def reconcile(self, name: str, namespace: str = "") -> Result:
        key = allocation_key(name, namespace)
        try:
            allocation = self._store.get(IPAllocation, name, namespace)
        except NotFoundError:
            self._backoff.reset(key)
            return Result()

        try:
            if allocation.metadata.deletion_timestamp:
                return self._finalize(allocation, key)

            if self._finalizer not in allocation.metadata.finalizers:
                allocation.metadata.finalizers.append(self._finalizer)
                allocation = self._store.update(allocation)

            phase = allocation.status.phase
            if phase in (
                IPAllocationPhase.ALLOCATED,
                IPAllocationPhase.FAILED,
                IPAllocationPhase.RELEASED,
            ):
                return Result()

            if allocation.status.has_range:
                return self._adopt_recorded_range(allocation, key)

            return self._allocate(allocation, key)
        except ConflictError as exc:
            LOG.debug("Conflict reconciling %s, requeueing: %s", key, exc)
            return Result(requeue_after=0.0)

    def _allocate(self, allocation: IPAllocation, key: str) -> Result:
        try:
            allocation.spec.validate()
            candidates = self.candidates_for(allocation)
            if allocation.spec.pinned_range is not None:
                selection = self._selector.select(
                    candidates, pinned=allocation.spec.pinned_range
                )
            else:
                selection = self._selector.select(
                    candidates, count=self.requested_count(allocation)
                )
        except IPAMError as exc:
            return self._record_failure(allocation, exc, key)

        owner = next(pool for pool, _ in candidates if pool.name == selection.pool_name)
        try:
            committed = self._commit(allocation, selection, owner)
        except Exception:
            owner.release(selection.range)
            raise
        self._refresh_pool_status(owner)
        if not committed:
            return Result()

        self._backoff.reset(key)
        LOG.info(
            "Allocated %s (%d addresses) from pool %s to %s for cluster %s",
            selection.range,
            selection.range.size,
            selection.pool_name,
            key,
            allocation.spec.tenant_cluster_ref.key,
        )
        return Result()

    def _commit(
        self, allocation: IPAllocation, selection: Selection, owner: PoolAllocator
    ) -> bool:
        """Record ``selection`` on the request unless it went away meanwhile."""

        meta = allocation.metadata
        with owner.lock:
            self._ensure_current(owner)
            try:
                latest = self._store.get(IPAllocation, meta.name, meta.namespace)
            except NotFoundError:
                latest = None
            if latest is None or latest.metadata.deletion_timestamp:
                owner.release(selection.range)
                LOG.info(
                    "Request %s was deleted while allocating; returned %s to pool %s",
                    allocation_key(meta.name, meta.namespace),
                    selection.range,
                    selection.pool_name,
                )
                return False
            if latest.status.has_range:
                # Recorded by a concurrent attempt; keep that range.
                owner.release(selection.range)
                return False

            self._fill_allocated(latest, selection)
            self._store.update_status(latest)
            return True

    def _fill_allocated(self, allocation: IPAllocation, selection: Selection) -> None:
        status = allocation.status
        allocated = selection.range
        status.phase = IPAllocationPhase.ALLOCATED
        status.start_address = allocated.start_address
        status.end_address = allocated.end_address
        status.cidr = allocated.to_cidr() or ""
        status.addresses = list(allocated.addresses())
        status.allocated_count = allocated.size
        status.allocated_at = self._clock()
        status.allocated_by = selection.pool_name
        status.released_at = None
        status.observed_generation = allocation.metadata.generation
        set_condition(
            status.conditions,
            Condition(
                type=CONDITION_READY,
                status="True",
                reason="Allocated",
                message=f"allocated {allocated} from pool {selection.pool_name}",
                last_transition_time=self._clock(),
                observed_generation=allocation.metadata.generation,
            ),
        )

    def _adopt_recorded_range(self, allocation: IPAllocation, key: str) -> Result:
        """Finish a request whose range was recorded by an earlier attempt."""

        status = allocation.status
        pool_name = status.allocated_by or allocation.spec.pool_ref.name
        recorded = recorded_range(allocation)
        try:
            owner = self.pool_allocator(pool_name)
            owner.restore(recorded)
        except IPAMError as exc:
            return self._record_failure(allocation, exc, key)

        LOG.debug("Request %s already holds %s; skipping allocation", key, recorded)
        self._fill_allocated(allocation, Selection(pool_name=pool_name, range=recorded))
        self._store.update_status(allocation)
        self._refresh_pool_status(owner)
        self._backoff.reset(key)
        return Result()

    def _record_failure(self, allocation: IPAllocation, exc: IPAMError, key: str) -> Result:
        status = allocation.status
        if exc.transient:
            delay = self._backoff.next(key)
            status.phase = IPAllocationPhase.PENDING
            LOG.warning("Allocation %s pending (%s), retrying in %.1fs: %s",
                        key, exc.reason, delay, exc)
        else:
            delay = None
            status.phase = IPAllocationPhase.FAILED
            self._backoff.reset(key)
            LOG.info("Allocation %s failed permanently (%s): %s", key, exc.reason, exc)

        status.observed_generation = allocation.metadata.generation
        set_condition(
            status.conditions,
            Condition(
                type=CONDITION_READY,
                status="False",
                reason=exc.reason,
                message=str(exc),
                last_transition_time=self._clock(),
                observed_generation=allocation.metadata.generation,
            ),
        )
        self._store.update_status(allocation)
        return Result(requeue_after=delay)

    # ------------------------------------------------------------------
    # Release / deletion
    # ------------------------------------------------------------------
    def release(self, name: str, namespace: str = "") -> IPAllocation:
        """Return the range of an allocation to its pool and mark it ``Released``.

        Releasing a ``loadbalancer`` allocation also gives back and deletes
        its elastic growth blocks.
        """

        allocation = self._store.get(IPAllocation, name, namespace)
        return self._release(allocation)

    def _release(self, allocation: IPAllocation) -> IPAllocation:
        if allocation.spec.type is IPAllocationType.LOADBALANCER and not is_growth_block(
            allocation
        ):
            with self._lb_lock:
                for child in self._growth_blocks(allocation):
                    self._discard(child)
                return self._release_range(allocation)
        return self._release_range(allocation)

    def _release_range(self, allocation: IPAllocation) -> IPAllocation:
        status = allocation.status
        if not allocation.is_active:
            return allocation

        released = recorded_range(allocation)
        pool_name = status.allocated_by or allocation.spec.pool_ref.name
        status.phase = IPAllocationPhase.RELEASED
        status.released_at = self._clock()
        set_condition(
            status.conditions,
            Condition(
                type=CONDITION_READY,
                status="False",
                reason="Released",
                message=f"released {released}",
                last_transition_time=self._clock(),
                observed_generation=allocation.metadata.generation,
            ),
        )

        try:
            owner = self.pool_allocator(pool_name)
        except (PoolNotFoundError, PoolConfigError) as exc:
            LOG.warning("Releasing %s without a usable pool: %s", released, exc)
            owner = None

        if owner is None:
            updated = self._store.update_status(allocation)
        else:
            with owner.lock:
                self._ensure_current(owner)
                updated = self._store.update_status(allocation)
                try:
                    owner.release(released)
                except RangeConflictError as exc:
                    LOG.warning("Pool %s kept addresses of other allocations: %s",
                                owner.name, exc)
            self._refresh_pool_status(owner)
        LOG.info(
            "Released %s from pool %s (%s)",
            released,
            pool_name,
            allocation_key(allocation.metadata.name, allocation.metadata.namespace),
        )
        return updated

    def _finalize(self, allocation: IPAllocation, key: str) -> Result:
        if self._finalizer not in allocation.metadata.finalizers:
            return Result()
        allocation = self._release(allocation)
        self._store.remove_finalizer(allocation, self._finalizer)
        self._backoff.reset(key)
        LOG.debug("Removed finalizer from %s", key)
        return Result()

    # ------------------------------------------------------------------
    # NetworkPool reconciliation
    # ------------------------------------------------------------------
    def reconcile_pool(self, name: str) -> Result:
        try:
            pool = self._store.get(NetworkPool, name)
        except NotFoundError:
            with self._pools_lock:
                lock = self._pool_locks.get(name)
                if lock is not None:
                    with lock:
                        self._pools.pop(name, None)
            return Result()

        try:
            allocator = self.pool_allocator(name)
        except PoolConfigError as exc:
            LOG.warning("NetworkPool %s rejected: %s", name, exc)
            self._write_invalid_pool(pool, exc)
            return Result()
        except PoolNotFoundError:
            return Result()
        self._refresh_pool_status(allocator)
        return Result()

    def _write_invalid_pool(self, pool: NetworkPool, exc: PoolConfigError) -> None:
        set_condition(
            pool.status.conditions,
            Condition(
                type=CONDITION_READY,
                status="False",
                reason=exc.reason,
                message=str(exc),
                last_transition_time=self._clock(),
                observed_generation=pool.metadata.generation,
            ),
        )
        pool.status.observed_generation = pool.metadata.generation
        try:
            self._store.update_status(pool)
        except ConflictError:
            LOG.debug("Pool %s changed while recording validation error", pool.name)

    def _refresh_pool_status(self, allocator: PoolAllocator) -> None:
        for _ in range(STATUS_WRITE_ATTEMPTS):
            try:
                pool = self._store.get(NetworkPool, allocator.name)
            except NotFoundError:
                return
            if pool.metadata.generation != allocator.generation:
                # A newer spec will be picked up by the next pool reconcile.
                return
            status = allocator.recompute_status()
            status.conditions = list(pool.status.conditions)
            set_condition(
                status.conditions,
                Condition(
                    type=CONDITION_READY,
                    status="True",
                    reason="PoolReady",
                    message=(
                        f"{status.available_ips} of {status.total_ips} addresses available"
                    ),
                    last_transition_time=self._clock(),
                    observed_generation=pool.metadata.generation,
                ),
            )
            pool.status = status
            try:
                self._store.update_status(pool)
                return
            except ConflictError:
                continue
        LOG.warning("Gave up writing status for pool %s after %d conflicts",
                    allocator.name, STATUS_WRITE_ATTEMPTS)

    # ------------------------------------------------------------------
    # Elastic load-balancer pools
    # ------------------------------------------------------------------
    def reconcile_load_balancer(
        self, name: str, namespace: str, tracker: ServiceBindingTracker
    ) -> int:
        """Resize the elastic pool behind the ``loadbalancer`` allocation ``name``.

        The allocation's own range is the initial block.  Growth blocks are
        persisted as child ``IPAllocation`` objects labelled with the parent
        name, so pool rebuilds restore them and releasing the parent releases
        them too.  Returns the number of addresses the tenant holds afterwards.
        Without an elastic provider configuration nothing changes.
        """

        key = allocation_key(name, namespace)
        with self._lb_lock:
            parent = self._store.get(IPAllocation, name, namespace)
            if parent.spec.type is not IPAllocationType.LOADBALANCER or is_growth_block(parent):
                raise InvalidRequestError(f"{key} is not a load-balancer allocation")
            if not parent.is_active or parent.metadata.deletion_timestamp:
                return 0

            children = self._growth_blocks(parent)
            active = [child for child in children if child.is_active]
            blocks: List[Optional[AddressRange]] = [recorded_range(parent)]
            blocks.extend(recorded_range(child) for child in active)
            if self._sizer is None:
                return sum(block.size for block in blocks if block is not None)

            plan = self._sizer.plan(
                [block for block in blocks if block is not None],
                tracker.addresses_in_use(parent.spec.tenant_cluster_ref.key),
            )
            if plan.grow:
                sequence = max((_growth_sequence(child) for child in children), default=0) + 1
                created = self._grow_load_balancer(parent, sequence)
                blocks.append(recorded_range(created))
            for index, remaining in plan.trims:
                self._trim_growth_block(active[index - 1], remaining)
                blocks[index] = remaining
            entitlement = sum(block.size for block in blocks if block is not None)
        LOG.debug("Load-balancer pool of %s holds %d addresses", key, entitlement)
        return entitlement

    def _growth_blocks(self, parent: IPAllocation) -> List[IPAllocation]:
        children = [
            allocation
            for allocation in self._store.list(IPAllocation, parent.metadata.namespace)
            if allocation.metadata.labels.get(LABEL_GROWTH_PARENT) == parent.name
        ]
        return sorted(children, key=_growth_sequence)

    def _grow_load_balancer(self, parent: IPAllocation, sequence: int) -> IPAllocation:
        candidates = self.candidates_for(parent)
        selection = self._selector.select(candidates, count=self._sizer.growth_increment)
        owner = next(pool for pool, _ in candidates if pool.name == selection.pool_name)

        child = IPAllocation(
            metadata=ObjectMeta(
                name=f"{parent.name}-grow-{sequence}",
                namespace=parent.metadata.namespace,
                generation=1,
                finalizers=[self._finalizer],
                labels={
                    LABEL_GROWTH_PARENT: parent.name,
                    LABEL_GROWTH_SEQUENCE: str(sequence),
                },
            ),
            spec=IPAllocationSpec(
                pool_ref=parent.spec.pool_ref,
                tenant_cluster_ref=parent.spec.tenant_cluster_ref,
                type=IPAllocationType.LOADBALANCER,
                count=selection.range.size,
            ),
        )
        self._fill_allocated(child, selection)
        try:
            with owner.lock:
                self._ensure_current(owner)
                created = self._store.create(child)
        except Exception:
            owner.release(selection.range)
            raise
        self._refresh_pool_status(owner)
        LOG.info(
            "Grew load-balancer pool of %s by %s from pool %s",
            allocation_key(parent.name, parent.metadata.namespace),
            selection.range,
            selection.pool_name,
        )
        return created

    def _trim_growth_block(self, child: IPAllocation, remaining: Optional[AddressRange]) -> None:
        if remaining is None:
            self._discard(child)
            return

        held = recorded_range(child)
        owner = self.pool_allocator(child.status.allocated_by)
        with owner.lock:
            self._ensure_current(owner)
            owner.shrink(held, remaining)
            self._fill_allocated(child, Selection(pool_name=owner.name, range=remaining))
            try:
                self._store.update_status(child)
            except Exception:
                owner.release(remaining)
                owner.restore(held)
                raise
        self._refresh_pool_status(owner)
        LOG.info("Trimmed load-balancer block %s to %s", held, remaining)

    def _discard(self, child: IPAllocation) -> None:
        """Release a growth block and delete its object."""

        child = self._release(child)
        self._store.remove_finalizer(child, self._finalizer)
        meta = child.metadata
        if self._store.exists(IPAllocation, meta.name, meta.namespace):
            self._store.delete(IPAllocation, meta.name, meta.namespace)
        LOG.debug("Discarded growth block %s", allocation_key(meta.name, meta.namespace))


def _growth_sequence(allocation: IPAllocation) -> int:
    return int(allocation.metadata.labels.get(LABEL_GROWTH_SEQUENCE, 0))
