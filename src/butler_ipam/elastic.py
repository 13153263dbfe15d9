"""Load-balancer pool sizing for ``elastic`` provider configurations."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Set, Tuple

from .address import AddressRange, format_address
from .resources import LoadBalancerConfig, LoadBalancerMode

LOG = logging.getLogger(__name__)


class ServiceBindingTracker(ABC):
    """Reports which load-balancer addresses are bound to tenant services."""

    @abstractmethod
    def addresses_in_use(self, tenant: str) -> Set[str]:
        """Return the dotted-quad addresses currently bound for ``tenant``."""


@dataclass(frozen=True)
class SizingPlan:
    """Changes to apply to a tenant's load-balancer blocks.

    ``trims`` holds ``(block index, remaining range)`` pairs; a remaining range
    of ``None`` means the whole block is given back.
    """

    grow: bool = False
    trims: Tuple[Tuple[int, Optional[AddressRange]], ...] = ()

    @property
    def changed(self) -> bool:
        return self.grow or bool(self.trims)


class ElasticSizer:
    """Decide how each tenant's load-balancer entitlement grows and shrinks.

    A tenant's blocks are ordered: the first one is the range of its
    ``loadbalancer`` allocation, sized ``initialPoolSize``, and every further
    block is a ``growthIncrement`` sized growth block.  When every held address
    is bound to a service the plan asks for one more growth block.  Otherwise
    unused addresses are trimmed from the tail of each growth block, so the
    remaining addresses stay contiguous; the first block is never trimmed,
    which keeps the entitlement at or above ``initialPoolSize``.

    The sizer holds no state of its own.  The lifecycle controller persists
    the blocks and applies the plan.  In ``static`` mode no plan ever changes
    anything.
    """

    def __init__(self, config: LoadBalancerConfig) -> None:
        self._config = config

    @property
    def elastic(self) -> bool:
        return self._config.mode is LoadBalancerMode.ELASTIC

    @property
    def growth_increment(self) -> int:
        return self._config.growth_increment

    def initial_count(self) -> int:
        return self._config.initial_pool_size

    def plan(self, blocks: Sequence[AddressRange], in_use: Iterable[str]) -> SizingPlan:
        if not self.elastic or not blocks:
            return SizingPlan()
        bound = set(in_use)
        if all(address in bound for block in blocks for address in block.addresses()):
            LOG.debug("All %d load-balancer addresses bound; growing",
                      sum(block.size for block in blocks))
            return SizingPlan(grow=True)

        trims = []
        for index in range(len(blocks) - 1, 0, -1):
            remaining = _trim_unused_tail(blocks[index], bound)
            if remaining != blocks[index]:
                trims.append((index, remaining))
        return SizingPlan(trims=tuple(trims))


def _trim_unused_tail(block: AddressRange, bound: Set[str]) -> Optional[AddressRange]:
    for value in range(block.end, block.start - 1, -1):
        if format_address(value) in bound:
            return AddressRange(block.start, value)
    return None
