"""Event primitives consumed by the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass

from butler_ipam.resources import IPAllocation, NetworkPool


@dataclass(frozen=True)
class PoolUpsert:
    """Desired spec for a ``NetworkPool``; creates or updates it."""

    pool: NetworkPool


@dataclass(frozen=True)
class PoolDelete:
    name: str


@dataclass(frozen=True)
class AllocationUpsert:
    """An ``IPAllocation`` request as published by the provisioning workflow.

    Requests are immutable once created; an upsert for an existing request
    with a different spec is ignored.
    """

    allocation: IPAllocation


@dataclass(frozen=True)
class AllocationDelete:
    """Tenant teardown: release the range and remove the request."""

    name: str
    namespace: str = ""
