"""IP address management core for Butler tenant clusters.

This package hosts the allocator that hands out node and load-balancer IPv4
ranges to tenant clusters from shared on-premises ``NetworkPool`` space.  It is
kept free of any API-server dependency so the allocation logic can be unit
tested in isolation and embedded in different runtimes.  It covers:

* IPv4 range arithmetic (:mod:`butler_ipam.address`);
* a coalescing best-fit free list with fragmentation metrics
  (:mod:`butler_ipam.freelist`);
* per-pool allocation honouring reserved ranges and the tenant allocation
  window (:mod:`butler_ipam.pool`);
* priority-ordered fallback across pools (:mod:`butler_ipam.selector`);
* elastic load-balancer pool sizing (:mod:`butler_ipam.elastic`); and
* the lifecycle controller that reconciles ``IPAllocation`` requests against
  a versioned object store (:mod:`butler_ipam.controller`).
"""

from .controller import AllocationLifecycleController, Backoff, Result  # noqa: F401
from .store import ObjectStore  # noqa: F401

__all__ = ["AllocationLifecycleController", "Backoff", "ObjectStore", "Result"]
