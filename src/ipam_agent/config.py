"""YAML configuration loader for the IPAM agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import yaml

from butler_ipam.controller import DEFAULT_FINALIZER
from butler_ipam.resources import (
    IPAllocation,
    IPAllocationSpec,
    NetworkPool,
    NetworkPoolSpec,
    ObjectMeta,
    ProviderNetworkConfig,
)


@dataclass
class ControllerConfig:
    finalizer: str = DEFAULT_FINALIZER
    backoff_base: float = 1.0
    backoff_max: float = 300.0
    workers: int = 2
    resync_interval: float = 30.0


@dataclass
class WatcherConfig:
    type: str
    path: Path
    interval: float = 5.0
    options: dict = field(default_factory=dict)


@dataclass
class AgentConfig:
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    pools: Sequence[NetworkPool] = field(default_factory=list)
    provider: Optional[ProviderNetworkConfig] = None
    watchers: Sequence[WatcherConfig] = field(default_factory=list)


def parse_pool(entry: dict) -> NetworkPool:
    """Build a ``NetworkPool`` from a flat manifest entry."""

    if not isinstance(entry, dict):
        raise ValueError("pool entries must be mappings")
    if "name" not in entry:
        raise ValueError("pool entry missing 'name'")
    if "cidr" not in entry:
        raise ValueError(f"pool '{entry['name']}' missing 'cidr'")
    return NetworkPool(
        metadata=ObjectMeta(name=str(entry["name"])),
        spec=NetworkPoolSpec.from_dict(entry),
    )


def parse_allocation(entry: dict) -> IPAllocation:
    """Build an ``IPAllocation`` request from a flat manifest entry."""

    if not isinstance(entry, dict):
        raise ValueError("allocation entries must be mappings")
    for key in ("name", "poolRef", "tenantClusterRef", "type"):
        if key not in entry:
            raise ValueError(f"allocation entry missing '{key}'")
    return IPAllocation(
        metadata=ObjectMeta(
            name=str(entry["name"]), namespace=str(entry.get("namespace", ""))
        ),
        spec=IPAllocationSpec.from_dict(entry),
    )


def _parse_controller(section: Optional[dict]) -> ControllerConfig:
    if section is None:
        return ControllerConfig()
    if not isinstance(section, dict):
        raise ValueError("'controller' section must be a mapping")
    workers = int(section.get("workers", 2))
    if workers < 1:
        raise ValueError("controller 'workers' must be at least 1")
    return ControllerConfig(
        finalizer=str(section.get("finalizer", DEFAULT_FINALIZER)),
        backoff_base=float(section.get("backoff_base", 1.0)),
        backoff_max=float(section.get("backoff_max", 300.0)),
        workers=workers,
        resync_interval=float(section.get("resync_interval", 30.0)),
    )


def _parse_watchers(entries: Iterable[dict]) -> List[WatcherConfig]:
    watchers: List[WatcherConfig] = []
    for entry in entries:
        options = entry.get("options", {})
        if not isinstance(options, dict):
            raise ValueError("watcher 'options' must be a mapping if provided")
        watchers.append(
            WatcherConfig(
                type=str(entry["type"]),
                path=Path(entry.get("path", ".")),
                interval=float(entry.get("interval", entry.get("poll_interval", 5.0))),
                options=options,
            )
        )
    return watchers


def load_config(path: Path) -> AgentConfig:
    data = yaml.safe_load(path.read_text())
    if not isinstance(data, dict):
        raise ValueError("Agent configuration must be a mapping")

    controller = _parse_controller(data.get("controller"))

    pools_section = data.get("pools", [])
    if not isinstance(pools_section, list):
        raise ValueError("'pools' section must be a list")
    pools = [parse_pool(entry) for entry in pools_section]

    provider_section = data.get("provider")
    if provider_section is not None and not isinstance(provider_section, dict):
        raise ValueError("'provider' section must be a mapping")
    provider = (
        ProviderNetworkConfig.from_dict(provider_section) if provider_section else None
    )

    watchers_section = data.get("watchers", [])
    if not isinstance(watchers_section, list):
        raise ValueError("'watchers' section must be a list")
    watchers = _parse_watchers(watchers_section)

    return AgentConfig(
        controller=controller, pools=pools, provider=provider, watchers=watchers
    )
