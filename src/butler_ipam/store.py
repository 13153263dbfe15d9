"""In-memory object store with optimistic concurrency.

The allocator only needs a small slice of a Kubernetes-like API: keyed
objects, a version token that changes on every write, compare-and-swap
updates and finalizer-aware deletion.  :class:`ObjectStore` provides exactly
that so the controller and the agent can run without an API server.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from typing import Dict, List, Tuple, TypeVar, Union

from .exceptions import AlreadyExistsError, ConflictError, NotFoundError
from .resources import IPAllocation, NetworkPool, utcnow

LOG = logging.getLogger(__name__)

Resource = Union[NetworkPool, IPAllocation]
R = TypeVar("R", NetworkPool, IPAllocation)
Key = Tuple[str, str, str]


def object_key(obj: Resource) -> Key:
    return obj.kind, obj.metadata.namespace, obj.metadata.name


class ObjectStore:
    """Thread-safe keyed store handing out deep copies.

    ``update`` and ``update_status`` compare the caller's
    ``metadata.resource_version`` against the stored one and raise
    :class:`ConflictError` when they differ.  ``generation`` is bumped only
    when the spec changes, mirroring the API server.
    """

    def __init__(self) -> None:
        self._objects: Dict[Key, Resource] = {}
        self._versions = itertools.count(1)
        self._lock = threading.Lock()

    def _next_version(self) -> str:
        return str(next(self._versions))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, kind: type, name: str, namespace: str = ""):
        with self._lock:
            obj = self._objects.get((kind.kind, namespace, name))
            if obj is None:
                raise NotFoundError(f"{kind.kind} {namespace}/{name} not found")
            return copy.deepcopy(obj)

    def exists(self, kind: type, name: str, namespace: str = "") -> bool:
        with self._lock:
            return (kind.kind, namespace, name) in self._objects

    def list(self, kind: type, namespace: str | None = None) -> List:
        with self._lock:
            items = [
                copy.deepcopy(obj)
                for (k, ns, _), obj in sorted(self._objects.items())
                if k == kind.kind and (namespace is None or ns == namespace)
            ]
        return items

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, obj: R) -> R:
        key = object_key(obj)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(f"{key[0]} {key[1]}/{key[2]} already exists")
            stored = copy.deepcopy(obj)
            stored.metadata.resource_version = self._next_version()
            stored.metadata.generation = 1
            stored.metadata.deletion_timestamp = None
            self._objects[key] = stored
            LOG.debug("Created %s %s/%s", *key)
            return copy.deepcopy(stored)

    def update(self, obj: R) -> R:
        """Replace metadata and spec; the stored status is kept."""

        return self._write(obj, status_only=False)

    def update_status(self, obj: R) -> R:
        """Replace the status only."""

        return self._write(obj, status_only=True)

    def _write(self, obj: R, *, status_only: bool) -> R:
        key = object_key(obj)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found")
            if current.metadata.resource_version != obj.metadata.resource_version:
                raise ConflictError(
                    f"{key[0]} {key[1]}/{key[2]} was modified "
                    f"(have {obj.metadata.resource_version}, "
                    f"stored {current.metadata.resource_version})"
                )
            stored = copy.deepcopy(current)
            if status_only:
                stored.status = copy.deepcopy(obj.status)
            else:
                if obj.spec != current.spec:
                    stored.metadata.generation += 1
                stored.spec = copy.deepcopy(obj.spec)
                stored.metadata.finalizers = list(obj.metadata.finalizers)
                stored.metadata.labels = dict(obj.metadata.labels)
            stored.metadata.resource_version = self._next_version()

            if stored.metadata.deletion_timestamp and not stored.metadata.finalizers:
                del self._objects[key]
                LOG.debug("Removed %s %s/%s after last finalizer", *key)
            else:
                self._objects[key] = stored
            return copy.deepcopy(stored)

    def delete(self, kind: type, name: str, namespace: str = "") -> bool:
        """Delete an object.

        Objects with finalizers are only marked with ``deletionTimestamp`` and
        disappear once the last finalizer is removed.  Returns ``True`` when
        the object was removed immediately.
        """

        key = (kind.kind, namespace, name)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"{key[0]} {namespace}/{name} not found")
            if current.metadata.finalizers:
                if not current.metadata.deletion_timestamp:
                    current.metadata.deletion_timestamp = utcnow()
                    current.metadata.resource_version = self._next_version()
                return False
            del self._objects[key]
            return True

    def remove_finalizer(self, obj: R, finalizer: str) -> None:
        if finalizer not in obj.metadata.finalizers:
            return
        obj.metadata.finalizers = [f for f in obj.metadata.finalizers if f != finalizer]
        self.update(obj)
