"""Free-range bookkeeping for a single pool."""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .address import AddressRange
from .exceptions import InsufficientSpaceError, OutOfRangeError, RangeConflictError


@dataclass(frozen=True)
class FreeListMetrics:
    """Snapshot of the free space of a tracker."""

    total_free: int
    largest_free_block: int
    fragmentation_percent: int
    free_blocks: int


class FreeListTracker:
    """Track free address ranges as a sorted, coalesced list.

    The tracker is seeded with the allocatable space of a pool (``universe``).
    Allocations are carved out of the free list with :meth:`reserve` and handed
    back with :meth:`release`, which merges the returned range with its free
    neighbours so the list never holds two adjacent entries.

    The tracker is not thread-safe on its own; :class:`~butler_ipam.pool.PoolAllocator`
    serialises access through its pool lock.
    """

    def __init__(self, universe: Sequence[AddressRange]) -> None:
        self._universe: List[AddressRange] = _coalesce(universe)
        self._free: List[AddressRange] = list(self._universe)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def universe(self) -> Sequence[AddressRange]:
        return tuple(self._universe)

    @property
    def capacity(self) -> int:
        return sum(r.size for r in self._universe)

    def free_ranges(self) -> Sequence[AddressRange]:
        return tuple(self._free)

    def in_universe(self, candidate: AddressRange) -> bool:
        """Return ``True`` when ``candidate`` lies inside one universe block."""

        return _containing(self._universe, candidate) is not None

    def is_free(self, candidate: AddressRange) -> bool:
        return _containing(self._free, candidate) is not None

    def find_fit(self, count: int) -> AddressRange:
        """Best-fit search for ``count`` contiguous addresses.

        The smallest free block able to hold ``count`` addresses wins; equal
        sizes are resolved by the lowest start address.  The returned range
        starts at the beginning of the chosen block.
        """

        if count < 1:
            raise ValueError(f"count must be positive, got {count}")

        best: Optional[AddressRange] = None
        for block in self._free:
            if block.size < count:
                continue
            if best is None or block.size < best.size:
                best = block
                if block.size == count:
                    break
        if best is None:
            largest = max((b.size for b in self._free), default=0)
            raise InsufficientSpaceError(
                f"no free block of {count} addresses (largest free block is {largest})",
                requested=count,
                largest=largest,
            )
        return AddressRange(best.start, best.start + count - 1)

    def metrics(self) -> FreeListMetrics:
        total = sum(b.size for b in self._free)
        largest = max((b.size for b in self._free), default=0)
        if total == 0:
            fragmentation = 0
        else:
            fragmentation = round(100 * (1 - largest / total))
        return FreeListMetrics(
            total_free=total,
            largest_free_block=largest,
            fragmentation_percent=fragmentation,
            free_blocks=len(self._free),
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def reserve(self, target: AddressRange) -> None:
        """Remove ``target`` from the free list, splitting its block."""

        index = _index_of_containing(self._free, target)
        if index is None:
            if not self.in_universe(target):
                raise RangeConflictError(f"range {target} is outside the tracked space")
            raise RangeConflictError(f"range {target} is not free")

        block = self._free.pop(index)
        for offset, piece in enumerate(block.subtract(target)):
            self._free.insert(index + offset, piece)

    def release(self, target: AddressRange) -> int:
        """Return ``target`` to the free list and coalesce neighbours.

        Addresses of ``target`` that are already free are left untouched so
        repeated releases are harmless.  Returns the number of addresses that
        were actually freed.
        """

        if not self.in_universe(target):
            raise OutOfRangeError(f"range {target} is outside the tracked space")

        freed = 0
        pieces = [target]
        for block in self._free:
            if block.start > target.end:
                break
            if block.overlaps(target):
                pieces = [p for piece in pieces for p in piece.subtract(block)]
        for piece in pieces:
            bisect.insort(self._free, piece)
            freed += piece.size
        self._free = _coalesce(self._free)
        return freed

    def reserve_all(self, ranges: Iterable[AddressRange]) -> None:
        for target in ranges:
            self.reserve(target)


def _coalesce(ranges: Iterable[AddressRange]) -> List[AddressRange]:
    merged: List[AddressRange] = []
    for current in sorted(ranges):
        if merged and (merged[-1].overlaps(current) or merged[-1].is_adjacent(current)):
            merged[-1] = merged[-1].merge(current)
        else:
            merged.append(current)
    return merged


def _index_of_containing(blocks: List[AddressRange], target: AddressRange) -> Optional[int]:
    # Blocks are sorted and disjoint, so only the block starting at or before
    # target.start can contain it.
    index = bisect.bisect_right(blocks, AddressRange(target.start, 2**32 - 1)) - 1
    if index >= 0 and blocks[index].contains(target):
        return index
    return None


def _containing(blocks: List[AddressRange], target: AddressRange) -> Optional[AddressRange]:
    index = _index_of_containing(blocks, target)
    return None if index is None else blocks[index]
