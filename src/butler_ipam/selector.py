"""Priority-ordered pool selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .address import AddressRange
from .exceptions import InsufficientSpaceError, OutOfRangeError, PoolExhaustedError
from .pool import PoolAllocator
from .resources import PinnedIPRange

LOG = logging.getLogger(__name__)

Candidate = Tuple[PoolAllocator, int]


@dataclass(frozen=True)
class Selection:
    """Range handed out by :class:`PriorityPoolSelector` and its source pool."""

    pool_name: str
    range: AddressRange


def order_candidates(candidates: Sequence[Candidate]) -> List[PoolAllocator]:
    """Sort by priority (lowest first); equal priorities keep list order."""

    indexed = sorted(enumerate(candidates), key=lambda item: (item[1][1], item[0]))
    return [pool for _, (pool, _) in indexed]


class PriorityPoolSelector:
    """Try candidate pools in priority order until one satisfies a request.

    Count requests fan out across pools; pinned requests only ever touch the
    first pool (in priority order) whose allocatable space holds the range.
    The selector never randomises, so identical pool states always produce the
    same selection.
    """

    def select(
        self,
        candidates: Sequence[Candidate],
        *,
        count: Optional[int] = None,
        pinned: Optional[PinnedIPRange] = None,
    ) -> Selection:
        if (count is None) == (pinned is None):
            raise ValueError("exactly one of count or pinned must be given")

        ordered = order_candidates(candidates)
        if pinned is not None:
            return self._select_pinned(ordered, pinned)
        return self._select_count(ordered, count)

    def _select_count(self, pools: Sequence[PoolAllocator], count: int) -> Selection:
        attempted: List[str] = []
        for pool in pools:
            attempted.append(pool.name)
            try:
                chosen = pool.allocate(count)
            except InsufficientSpaceError as exc:
                LOG.debug("Pool %s cannot fit %d addresses: %s", pool.name, count, exc)
                continue
            if len(attempted) > 1:
                LOG.info(
                    "Fell back to pool %s after exhausting %s",
                    pool.name,
                    ", ".join(attempted[:-1]),
                )
            return Selection(pool_name=pool.name, range=chosen)
        raise PoolExhaustedError(attempted, count)

    def _select_pinned(
        self, pools: Sequence[PoolAllocator], pinned: PinnedIPRange
    ) -> Selection:
        target = AddressRange.from_addresses(pinned.start_address, pinned.end_address)
        owner = next((pool for pool in pools if pool.contains(target)), None)
        if owner is None:
            names = ", ".join(pool.name for pool in pools) or "<none>"
            raise OutOfRangeError(
                f"pinned range {target} is not inside any candidate pool ({names})"
            )
        chosen = owner.allocate_pinned(pinned.start_address, pinned.end_address)
        return Selection(pool_name=owner.name, range=chosen)
