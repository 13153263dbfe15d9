"""File-based manifest watcher."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Event, Thread
from typing import Dict, Tuple

from butler_ipam.exceptions import IPAMError
from butler_ipam.resources import IPAllocation, NetworkPool

from ..config import parse_allocation, parse_pool
from ..dispatcher import EventDispatcher
from ..events import AllocationDelete, AllocationUpsert, PoolDelete, PoolUpsert

LOG = logging.getLogger(__name__)

AllocationKey = Tuple[str, str]


def _extract_state(
    payload: dict,
) -> Tuple[Dict[str, NetworkPool], Dict[AllocationKey, IPAllocation]]:
    if not isinstance(payload, dict):
        raise ValueError("manifest must be a JSON object")
    pools_raw = payload.get("pools", [])
    allocations_raw = payload.get("allocations", [])
    if not isinstance(pools_raw, list) or not isinstance(allocations_raw, list):
        raise ValueError("manifest 'pools' and 'allocations' must be lists")

    pools: Dict[str, NetworkPool] = {}
    for entry in pools_raw:
        pool = parse_pool(entry)
        pools[pool.name] = pool

    allocations: Dict[AllocationKey, IPAllocation] = {}
    for entry in allocations_raw:
        allocation = parse_allocation(entry)
        allocations[(allocation.metadata.namespace, allocation.name)] = allocation
    return pools, allocations


class FileManifestWatcher(Thread):
    """Poll a JSON manifest of pools and allocation requests.

    The manifest is treated as the full desired state: entries that appear or
    change are published as upserts, entries that disappear as deletes.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher,
        path: Path,
        interval: float,
        stop_event: Event,
    ) -> None:
        super().__init__(daemon=True)
        self._dispatcher = dispatcher
        self._path = Path(path)
        self._interval = interval
        self._stop_event = stop_event
        self._pools: Dict[str, NetworkPool] = {}
        self._allocations: Dict[AllocationKey, IPAllocation] = {}

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll()
            except Exception:  # pragma: no cover - logged below
                LOG.exception("manifest watcher encountered an error")
            self._stop_event.wait(self._interval)

    def poll(self) -> None:
        if not self._path.exists():
            LOG.debug("manifest file %s does not exist yet", self._path)
            return

        try:
            payload = json.loads(self._path.read_text())
        except json.JSONDecodeError as exc:
            LOG.warning("failed to parse manifest file %s: %s", self._path, exc)
            return

        try:
            pools, allocations = _extract_state(payload)
        except (ValueError, KeyError, IPAMError) as exc:
            LOG.warning("invalid manifest file %s: %s", self._path, exc)
            return

        for name, pool in pools.items():
            previous = self._pools.get(name)
            if previous is None or previous.spec != pool.spec:
                LOG.debug("pool %s updated", name)
                self._dispatcher.handle(PoolUpsert(pool))

        for key, allocation in allocations.items():
            previous = self._allocations.get(key)
            if previous is None or previous.spec != allocation.spec:
                LOG.debug("allocation %s/%s updated", *key)
                self._dispatcher.handle(AllocationUpsert(allocation))

        for namespace, name in set(self._allocations) - set(allocations):
            LOG.debug("allocation %s/%s removed", namespace, name)
            self._dispatcher.handle(AllocationDelete(name, namespace))

        for name in set(self._pools) - set(pools):
            LOG.debug("pool %s removed", name)
            self._dispatcher.handle(PoolDelete(name))

        self._pools = pools
        self._allocations = allocations
