#!/usr/bin/env python3
"""Dry-run allocation requests against configured pools and report the result."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

REPO_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from butler_ipam.controller import AllocationLifecycleController  # noqa: E402
from butler_ipam.resources import IPAllocation, NetworkPool, find_condition  # noqa: E402
from butler_ipam.store import ObjectStore  # noqa: E402
from ipam_agent.config import load_config, parse_allocation, parse_pool  # noqa: E402


LOG = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("deploy/ipam/agent.yaml"),
        help="Agent configuration providing pools and provider settings",
    )
    parser.add_argument(
        "--manifest",
        type=Path,
        default=Path("deploy/ipam/manifest.json"),
        help="JSON manifest with additional pools and allocation requests",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Write the resulting pool and allocation objects as JSON",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args()


def load_manifest(path: Path) -> Dict[str, Any]:
    if not path.exists():
        LOG.warning("Manifest %s not found; reporting configured pools only", path)
        return {}
    with path.open() as fh:
        return json.load(fh)


def format_pool(pool: NetworkPool) -> str:
    status = pool.status
    ready = find_condition(status.conditions, "Ready")
    state = ready.reason if ready else "Unknown"
    return (
        f"{pool.name:<20} {pool.spec.cidr:<18} total={status.total_ips:<6} "
        f"allocated={status.allocated_ips:<6} available={status.available_ips:<6} "
        f"largest={status.largest_free_block:<6} "
        f"fragmentation={status.fragmentation_percent or 0}% [{state}]"
    )


def format_allocation(allocation: IPAllocation) -> str:
    status = allocation.status
    key = f"{allocation.metadata.namespace}/{allocation.name}"
    phase = status.phase.value if status.phase else "-"
    if status.has_range:
        return (
            f"{key:<30} {phase:<10} {status.start_address}-{status.end_address} "
            f"({status.allocated_count}) from {status.allocated_by}"
        )
    ready = find_condition(status.conditions, "Ready")
    detail = f"{ready.reason}: {ready.message}" if ready else ""
    return f"{key:<30} {phase:<10} {detail}"


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    config = load_config(args.config)
    manifest = load_manifest(args.manifest)

    store = ObjectStore()
    controller = AllocationLifecycleController(
        store, config.provider, finalizer=config.controller.finalizer
    )

    pools: List[NetworkPool] = list(config.pools)
    pools.extend(parse_pool(entry) for entry in manifest.get("pools", []))
    for pool in pools:
        store.create(pool)
        controller.reconcile_pool(pool.name)

    for entry in manifest.get("allocations", []):
        allocation = parse_allocation(entry)
        store.create(allocation)
        result = controller.reconcile(allocation.name, allocation.metadata.namespace)
        if result.requeue:
            LOG.warning(
                "Request %s/%s could not be satisfied yet",
                allocation.metadata.namespace,
                allocation.name,
            )

    print("Pools:")
    for pool in store.list(NetworkPool):
        print(f"  {format_pool(pool)}")
    print("Allocations:")
    for allocation in store.list(IPAllocation):
        print(f"  {format_allocation(allocation)}")

    if args.output:
        payload = {
            "pools": [pool.to_dict() for pool in store.list(NetworkPool)],
            "allocations": [a.to_dict() for a in store.list(IPAllocation)],
        }
        args.output.write_text(json.dumps(payload, indent=2) + "\n")
        LOG.info("Report written to %s", args.output)


if __name__ == "__main__":
    main()
