"""Exception hierarchy shared by the allocator layers.

Every error carries a ``reason`` which the lifecycle controller copies into the
``status.conditions`` of the affected resource, and a ``transient`` flag that
decides whether the request is retried or failed permanently.
"""

from __future__ import annotations

from typing import Sequence


class IPAMError(Exception):
    """Base class for every allocator error."""

    reason = "AllocationFailed"
    transient = False


class InvalidAddressError(IPAMError, ValueError):
    """Raised for malformed dotted-quad or CIDR strings."""

    reason = "InvalidAddress"


class RangeOrderError(IPAMError, ValueError):
    """Raised when a range's start address is greater than its end."""

    reason = "InvalidAddress"


class RangeConflictError(IPAMError):
    """A pinned range overlaps addresses that are not free."""

    reason = "RangeConflict"


class OutOfRangeError(IPAMError):
    """A range falls outside the allocatable space of every candidate pool."""

    reason = "OutOfRange"


class InsufficientSpaceError(IPAMError):
    """No contiguous free block of the requested size exists in a pool."""

    reason = "PoolExhausted"
    transient = True

    def __init__(self, message: str, *, requested: int = 0, largest: int = 0) -> None:
        super().__init__(message)
        self.requested = requested
        self.largest = largest


class PoolExhaustedError(IPAMError):
    """Every candidate pool failed to satisfy a count request."""

    reason = "PoolExhausted"
    transient = True

    def __init__(self, attempted: Sequence[str], requested: int) -> None:
        self.attempted = list(attempted)
        self.requested = requested
        pools = ", ".join(self.attempted) or "<none>"
        super().__init__(
            f"no pool could satisfy a request for {requested} addresses "
            f"(attempted: {pools})"
        )


class InvalidRequestError(IPAMError, ValueError):
    """An allocation request is malformed (e.g. both count and pinned range)."""

    reason = "InvalidRequest"


class PoolConfigError(IPAMError, ValueError):
    """A NetworkPool specification was rejected during validation."""

    reason = "InvalidConfig"
    # The pool can be corrected without touching the request.
    transient = True


class PoolNotFoundError(IPAMError):
    """A referenced NetworkPool does not exist (yet)."""

    reason = "PoolNotFound"
    transient = True


class StoreError(Exception):
    """Base class for object store errors."""


class NotFoundError(StoreError, KeyError):
    """The requested object does not exist."""


class AlreadyExistsError(StoreError):
    """An object with the same key already exists."""


class ConflictError(StoreError):
    """The object was modified since it was read (stale resource version)."""
