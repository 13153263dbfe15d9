"""Apply watcher events to the store and drive the controller from a queue."""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Union

from butler_ipam.controller import AllocationLifecycleController, Result
from butler_ipam.exceptions import NotFoundError
from butler_ipam.resources import IPAllocation, NetworkPool
from butler_ipam.store import ObjectStore

from .events import AllocationDelete, AllocationUpsert, PoolDelete, PoolUpsert
from .queue import WorkQueue

LOG = logging.getLogger(__name__)

POOL_PREFIX = "pool/"
ALLOCATION_PREFIX = "ipallocation/"

# Delay before retrying a key whose reconcile raised unexpectedly.
ERROR_REQUEUE_DELAY = 5.0

EventType = Union[PoolUpsert, PoolDelete, AllocationUpsert, AllocationDelete]


def pool_key(name: str) -> str:
    return f"{POOL_PREFIX}{name}"


def allocation_key(name: str, namespace: str = "") -> str:
    return f"{ALLOCATION_PREFIX}{namespace}/{name}"


class EventDispatcher:
    """Write events into the store and enqueue the affected keys."""

    def __init__(self, store: ObjectStore, queue: WorkQueue) -> None:
        self._store = store
        self._queue = queue

    def handle(self, event: EventType) -> None:
        if isinstance(event, PoolUpsert):
            self._on_pool_upsert(event)
        elif isinstance(event, PoolDelete):
            self._on_pool_delete(event)
        elif isinstance(event, AllocationUpsert):
            self._on_allocation_upsert(event)
        elif isinstance(event, AllocationDelete):
            self._on_allocation_delete(event)
        else:
            raise TypeError(f"Unsupported event type: {type(event)!r}")

    def resync(self) -> None:
        """Enqueue every known object."""

        for pool in self._store.list(NetworkPool):
            self._queue.add(pool_key(pool.name))
        for allocation in self._store.list(IPAllocation):
            self._queue.add(allocation_key(allocation.name, allocation.metadata.namespace))

    def _on_pool_upsert(self, event: PoolUpsert) -> None:
        desired = event.pool
        try:
            current = self._store.get(NetworkPool, desired.name)
        except NotFoundError:
            self._store.create(desired)
            LOG.info("NetworkPool %s created (%s)", desired.name, desired.spec.cidr)
        else:
            if current.spec != desired.spec:
                current.spec = desired.spec
                self._store.update(current)
                LOG.info("NetworkPool %s updated", desired.name)
        self._queue.add(pool_key(desired.name))
        # New or changed space may satisfy requests waiting on exhaustion.
        for allocation in self._store.list(IPAllocation):
            if not allocation.status.has_range:
                self._queue.add(
                    allocation_key(allocation.name, allocation.metadata.namespace)
                )

    def _on_pool_delete(self, event: PoolDelete) -> None:
        try:
            self._store.delete(NetworkPool, event.name)
        except NotFoundError:
            LOG.debug("NetworkPool %s already gone", event.name)
        self._queue.add(pool_key(event.name))

    def _on_allocation_upsert(self, event: AllocationUpsert) -> None:
        desired = event.allocation
        meta = desired.metadata
        try:
            current = self._store.get(IPAllocation, meta.name, meta.namespace)
        except NotFoundError:
            self._store.create(desired)
            LOG.info("IPAllocation %s/%s created", meta.namespace, meta.name)
        else:
            if current.spec != desired.spec:
                LOG.warning(
                    "IPAllocation %s/%s is immutable; ignoring spec change "
                    "(delete and recreate to resize)",
                    meta.namespace,
                    meta.name,
                )
        self._queue.add(allocation_key(meta.name, meta.namespace))

    def _on_allocation_delete(self, event: AllocationDelete) -> None:
        try:
            self._store.delete(IPAllocation, event.name, event.namespace)
        except NotFoundError:
            LOG.debug("IPAllocation %s/%s already gone", event.namespace, event.name)
            return
        self._queue.add(allocation_key(event.name, event.namespace))


class Worker(Thread):
    """Drain the work queue and call the controller for each key."""

    def __init__(
        self,
        queue: WorkQueue,
        controller: AllocationLifecycleController,
        stop_event: Event,
        *,
        name: str = "ipam-worker",
    ) -> None:
        super().__init__(daemon=True, name=name)
        self._queue = queue
        self._controller = controller
        self._stop_event = stop_event

    def run(self) -> None:
        while not self._stop_event.is_set():
            key = self._queue.get(timeout=0.5)
            if key is None:
                continue
            self.process(key)

    def process(self, key: str) -> None:
        try:
            result = self._reconcile(key)
        except Exception:  # pragma: no cover - logged and retried
            LOG.exception("reconcile of %s failed", key)
            result = Result(requeue_after=ERROR_REQUEUE_DELAY)
        finally:
            self._queue.done(key)
        if result.requeue:
            LOG.debug("requeueing %s in %.1fs", key, result.requeue_after)
            self._queue.add_after(key, result.requeue_after)

    def _reconcile(self, key: str) -> Result:
        if key.startswith(POOL_PREFIX):
            return self._controller.reconcile_pool(key[len(POOL_PREFIX):])
        if key.startswith(ALLOCATION_PREFIX):
            namespace, _, name = key[len(ALLOCATION_PREFIX):].partition("/")
            return self._controller.reconcile(name, namespace)
        raise ValueError(f"unknown work queue key {key!r}")
