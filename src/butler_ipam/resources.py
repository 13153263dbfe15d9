"""Resource shapes persisted by the platform store.

The dataclasses below mirror the ``NetworkPool`` and ``IPAllocation``
resources.  ``to_dict``/``from_dict`` produce and consume the exact camelCase
JSON field names of the persisted contract; empty optional fields are omitted
on output the same way ``omitempty`` does.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .exceptions import InvalidRequestError

API_VERSION = "butler.butlerlabs.dev/v1alpha1"

CONDITION_READY = "Ready"


def utcnow() -> str:
    """Return the current time as an RFC 3339 UTC timestamp."""

    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _prune(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v not in (None, "", [], {})}


class IPAllocationType(str, Enum):
    NODES = "nodes"
    LOADBALANCER = "loadbalancer"


class IPAllocationPhase(str, Enum):
    PENDING = "Pending"
    ALLOCATED = "Allocated"
    RELEASED = "Released"
    FAILED = "Failed"


class LoadBalancerMode(str, Enum):
    STATIC = "static"
    ELASTIC = "elastic"


# ----------------------------------------------------------------------
# Common metadata
# ----------------------------------------------------------------------
@dataclass
class ObjectMeta:
    name: str
    namespace: str = ""
    resource_version: str = ""
    generation: int = 0
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return _prune(
            {
                "name": self.name,
                "namespace": self.namespace,
                "resourceVersion": self.resource_version,
                "generation": self.generation or None,
                "finalizers": list(self.finalizers),
                "deletionTimestamp": self.deletion_timestamp,
                "labels": dict(self.labels),
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        return cls(
            name=str(data["name"]),
            namespace=str(data.get("namespace", "")),
            resource_version=str(data.get("resourceVersion", "")),
            generation=int(data.get("generation", 0)),
            finalizers=list(data.get("finalizers", [])),
            deletion_timestamp=data.get("deletionTimestamp"),
            labels=dict(data.get("labels", {})),
        )


@dataclass
class Condition:
    """Mirror of the Kubernetes ``metav1.Condition`` shape."""

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: str = ""
    observed_generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _prune(
            {
                "type": self.type,
                "status": self.status,
                "reason": self.reason,
                "message": self.message,
                "lastTransitionTime": self.last_transition_time,
                "observedGeneration": self.observed_generation or None,
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=str(data["type"]),
            status=str(data["status"]),
            reason=str(data.get("reason", "")),
            message=str(data.get("message", "")),
            last_transition_time=str(data.get("lastTransitionTime", "")),
            observed_generation=int(data.get("observedGeneration", 0)),
        )


def set_condition(conditions: List[Condition], new: Condition) -> None:
    """Insert or replace the condition with ``new.type``.

    ``lastTransitionTime`` only moves when the status actually changes.
    """

    for index, existing in enumerate(conditions):
        if existing.type != new.type:
            continue
        if existing.status == new.status and existing.last_transition_time:
            new.last_transition_time = existing.last_transition_time
        conditions[index] = new
        return
    conditions.append(new)


def find_condition(conditions: Sequence[Condition], type_: str) -> Optional[Condition]:
    return next((c for c in conditions if c.type == type_), None)


# ----------------------------------------------------------------------
# NetworkPool
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ReservedRange:
    cidr: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return _prune({"cidr": self.cidr, "description": self.description})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReservedRange":
        return cls(cidr=str(data["cidr"]), description=str(data.get("description", "")))


@dataclass(frozen=True)
class TenantAllocationDefaults:
    nodes_per_tenant: int = 5
    lb_pool_per_tenant: int = 8

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodesPerTenant": self.nodes_per_tenant,
            "lbPoolPerTenant": self.lb_pool_per_tenant,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TenantAllocationDefaults":
        data = data or {}
        return cls(
            nodes_per_tenant=int(data.get("nodesPerTenant", 5)),
            lb_pool_per_tenant=int(data.get("lbPoolPerTenant", 8)),
        )


@dataclass(frozen=True)
class TenantAllocationConfig:
    start: str
    end: str
    defaults: TenantAllocationDefaults = field(default_factory=TenantAllocationDefaults)

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "defaults": self.defaults.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TenantAllocationConfig":
        return cls(
            start=str(data["start"]),
            end=str(data["end"]),
            defaults=TenantAllocationDefaults.from_dict(data.get("defaults")),
        )


@dataclass
class NetworkPoolSpec:
    cidr: str
    reserved: List[ReservedRange] = field(default_factory=list)
    tenant_allocation: Optional[TenantAllocationConfig] = None

    @property
    def defaults(self) -> TenantAllocationDefaults:
        if self.tenant_allocation is None:
            return TenantAllocationDefaults()
        return self.tenant_allocation.defaults

    def to_dict(self) -> Dict[str, Any]:
        return _prune(
            {
                "cidr": self.cidr,
                "reserved": [r.to_dict() for r in self.reserved],
                "tenantAllocation": (
                    self.tenant_allocation.to_dict() if self.tenant_allocation else None
                ),
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkPoolSpec":
        tenant = data.get("tenantAllocation")
        return cls(
            cidr=str(data["cidr"]),
            reserved=[ReservedRange.from_dict(r) for r in data.get("reserved", [])],
            tenant_allocation=TenantAllocationConfig.from_dict(tenant) if tenant else None,
        )


@dataclass
class NetworkPoolStatus:
    conditions: List[Condition] = field(default_factory=list)
    total_ips: int = 0
    allocated_ips: int = 0
    available_ips: int = 0
    allocation_count: int = 0
    fragmentation_percent: Optional[int] = None
    largest_free_block: int = 0
    observed_generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = _prune(
            {
                "conditions": [c.to_dict() for c in self.conditions],
                "totalIPs": self.total_ips or None,
                "allocatedIPs": self.allocated_ips or None,
                "availableIPs": self.available_ips or None,
                "allocationCount": self.allocation_count or None,
                "largestFreeBlock": self.largest_free_block or None,
                "observedGeneration": self.observed_generation or None,
            }
        )
        # A pointer field upstream: zero is a meaningful value.
        if self.fragmentation_percent is not None:
            data["fragmentationPercent"] = self.fragmentation_percent
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NetworkPoolStatus":
        data = data or {}
        fragmentation = data.get("fragmentationPercent")
        return cls(
            conditions=[Condition.from_dict(c) for c in data.get("conditions", [])],
            total_ips=int(data.get("totalIPs", 0)),
            allocated_ips=int(data.get("allocatedIPs", 0)),
            available_ips=int(data.get("availableIPs", 0)),
            allocation_count=int(data.get("allocationCount", 0)),
            fragmentation_percent=None if fragmentation is None else int(fragmentation),
            largest_free_block=int(data.get("largestFreeBlock", 0)),
            observed_generation=int(data.get("observedGeneration", 0)),
        )


@dataclass
class NetworkPool:
    metadata: ObjectMeta
    spec: NetworkPoolSpec
    status: NetworkPoolStatus = field(default_factory=NetworkPoolStatus)

    kind = "NetworkPool"

    @property
    def name(self) -> str:
        return self.metadata.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkPool":
        return cls(
            metadata=ObjectMeta.from_dict(data["metadata"]),
            spec=NetworkPoolSpec.from_dict(data["spec"]),
            status=NetworkPoolStatus.from_dict(data.get("status")),
        )


# ----------------------------------------------------------------------
# IPAllocation
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class LocalObjectReference:
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name}


@dataclass(frozen=True)
class NamespacedObjectReference:
    name: str
    namespace: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return _prune({"name": self.name, "namespace": self.namespace})

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class PinnedIPRange:
    start_address: str
    end_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {"startAddress": self.start_address, "endAddress": self.end_address}


@dataclass
class IPAllocationSpec:
    pool_ref: LocalObjectReference
    tenant_cluster_ref: NamespacedObjectReference
    type: IPAllocationType
    count: Optional[int] = None
    pinned_range: Optional[PinnedIPRange] = None

    def validate(self) -> None:
        if self.count is not None and self.pinned_range is not None:
            raise InvalidRequestError("count and pinnedRange are mutually exclusive")
        if self.count is not None and self.count < 1:
            raise InvalidRequestError(f"count must be at least 1, got {self.count}")
        if not self.pool_ref.name:
            raise InvalidRequestError("poolRef.name is required")

    def to_dict(self) -> Dict[str, Any]:
        return _prune(
            {
                "poolRef": self.pool_ref.to_dict(),
                "tenantClusterRef": self.tenant_cluster_ref.to_dict(),
                "type": self.type.value,
                "count": self.count,
                "pinnedRange": self.pinned_range.to_dict() if self.pinned_range else None,
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IPAllocationSpec":
        pinned = data.get("pinnedRange")
        count = data.get("count")
        try:
            type_ = IPAllocationType(data["type"])
        except ValueError as exc:
            raise InvalidRequestError(f"unsupported allocation type {data['type']!r}") from exc
        cluster = data["tenantClusterRef"]
        return cls(
            pool_ref=LocalObjectReference(str(data["poolRef"]["name"])),
            tenant_cluster_ref=NamespacedObjectReference(
                name=str(cluster["name"]), namespace=str(cluster.get("namespace", ""))
            ),
            type=type_,
            count=None if count is None else int(count),
            pinned_range=(
                PinnedIPRange(str(pinned["startAddress"]), str(pinned["endAddress"]))
                if pinned
                else None
            ),
        )


@dataclass
class IPAllocationStatus:
    phase: Optional[IPAllocationPhase] = None
    conditions: List[Condition] = field(default_factory=list)
    cidr: str = ""
    start_address: str = ""
    end_address: str = ""
    addresses: List[str] = field(default_factory=list)
    allocated_count: int = 0
    observed_generation: int = 0
    allocated_at: Optional[str] = None
    allocated_by: str = ""
    released_at: Optional[str] = None

    @property
    def has_range(self) -> bool:
        return bool(self.start_address and self.end_address)

    def clear_range(self) -> None:
        self.cidr = ""
        self.start_address = ""
        self.end_address = ""
        self.addresses = []
        self.allocated_count = 0

    def to_dict(self) -> Dict[str, Any]:
        return _prune(
            {
                "phase": self.phase.value if self.phase else None,
                "conditions": [c.to_dict() for c in self.conditions],
                "cidr": self.cidr,
                "startAddress": self.start_address,
                "endAddress": self.end_address,
                "addresses": list(self.addresses),
                "allocatedCount": self.allocated_count or None,
                "observedGeneration": self.observed_generation or None,
                "allocatedAt": self.allocated_at,
                "allocatedBy": self.allocated_by,
                "releasedAt": self.released_at,
            }
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "IPAllocationStatus":
        data = data or {}
        phase = data.get("phase")
        return cls(
            phase=IPAllocationPhase(phase) if phase else None,
            conditions=[Condition.from_dict(c) for c in data.get("conditions", [])],
            cidr=str(data.get("cidr", "")),
            start_address=str(data.get("startAddress", "")),
            end_address=str(data.get("endAddress", "")),
            addresses=list(data.get("addresses", [])),
            allocated_count=int(data.get("allocatedCount", 0)),
            observed_generation=int(data.get("observedGeneration", 0)),
            allocated_at=data.get("allocatedAt"),
            allocated_by=str(data.get("allocatedBy", "")),
            released_at=data.get("releasedAt"),
        )


@dataclass
class IPAllocation:
    metadata: ObjectMeta
    spec: IPAllocationSpec
    status: IPAllocationStatus = field(default_factory=IPAllocationStatus)

    kind = "IPAllocation"

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def is_active(self) -> bool:
        """Whether the recorded range still occupies pool space."""

        return self.status.has_range and self.status.phase not in (
            IPAllocationPhase.RELEASED,
            IPAllocationPhase.FAILED,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IPAllocation":
        return cls(
            metadata=ObjectMeta.from_dict(data["metadata"]),
            spec=IPAllocationSpec.from_dict(data["spec"]),
            status=IPAllocationStatus.from_dict(data.get("status")),
        )


# ----------------------------------------------------------------------
# Provider network configuration
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class PoolRef:
    name: str
    priority: int = 0


@dataclass(frozen=True)
class LoadBalancerConfig:
    mode: LoadBalancerMode = LoadBalancerMode.STATIC
    default_pool_size: int = 8
    initial_pool_size: int = 4
    growth_increment: int = 2

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LoadBalancerConfig":
        data = data or {}
        mode_raw = str(data.get("mode", LoadBalancerMode.STATIC.value)).lower()
        try:
            mode = LoadBalancerMode(mode_raw)
        except ValueError as exc:
            raise ValueError(f"Unsupported load balancer mode '{mode_raw}'") from exc
        config = cls(
            mode=mode,
            default_pool_size=int(data.get("defaultPoolSize", 8)),
            initial_pool_size=int(data.get("initialPoolSize", 4)),
            growth_increment=int(data.get("growthIncrement", 2)),
        )
        for label, value in (
            ("defaultPoolSize", config.default_pool_size),
            ("initialPoolSize", config.initial_pool_size),
            ("growthIncrement", config.growth_increment),
        ):
            if value < 1:
                raise ValueError(f"loadBalancer.{label} must be at least 1")
        return config


@dataclass(frozen=True)
class ProviderNetworkConfig:
    pool_refs: Sequence[PoolRef] = ()
    load_balancer: LoadBalancerConfig = field(default_factory=LoadBalancerConfig)

    def ordered_pools(self) -> List[PoolRef]:
        """Pool references sorted by priority, stable on declaration order."""

        return sorted(self.pool_refs, key=lambda ref: ref.priority)

    def includes(self, pool_name: str) -> bool:
        return any(ref.name == pool_name for ref in self.pool_refs)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProviderNetworkConfig":
        data = data or {}
        refs = data.get("poolRefs", [])
        if not isinstance(refs, list):
            raise ValueError("'poolRefs' must be a list")
        return cls(
            pool_refs=tuple(
                PoolRef(name=str(ref["name"]), priority=int(ref.get("priority", 0)))
                for ref in refs
            ),
            load_balancer=LoadBalancerConfig.from_dict(data.get("loadBalancer")),
        )
