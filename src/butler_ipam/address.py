"""IPv4 address range arithmetic.

Addresses are handled as unsigned 32-bit integers and ranges are inclusive on
both ends.  The network and broadcast addresses of a CIDR are part of its
range; pools that want them excluded list them under ``reserved``.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .exceptions import InvalidAddressError, RangeOrderError

MAX_ADDRESS = 2**32 - 1


def parse_address(value: str) -> int:
    """Convert a dotted-quad string into its integer value."""

    if not isinstance(value, str) or not value:
        raise InvalidAddressError(f"invalid IPv4 address {value!r}")
    try:
        return int(ipaddress.IPv4Address(value.strip()))
    except ipaddress.AddressValueError as exc:
        raise InvalidAddressError(f"invalid IPv4 address {value!r}: {exc}") from exc


def format_address(value: int) -> str:
    if not 0 <= value <= MAX_ADDRESS:
        raise InvalidAddressError(f"address {value} is outside the IPv4 space")
    return str(ipaddress.IPv4Address(value))


@dataclass(frozen=True, order=True)
class AddressRange:
    """Inclusive ``[start, end]`` range of IPv4 addresses."""

    start: int
    end: int

    def __post_init__(self) -> None:
        for bound in (self.start, self.end):
            if not 0 <= bound <= MAX_ADDRESS:
                raise InvalidAddressError(f"address {bound} is outside the IPv4 space")
        if self.start > self.end:
            raise RangeOrderError(
                f"range start {format_address(self.start)} is after "
                f"end {format_address(self.end)}"
            )

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_cidr(cls, cidr: str) -> "AddressRange":
        if not isinstance(cidr, str) or "/" not in cidr:
            raise InvalidAddressError(f"invalid CIDR {cidr!r}")
        try:
            network = ipaddress.IPv4Network(cidr.strip(), strict=False)
        except (ipaddress.AddressValueError, ipaddress.NetmaskValueError) as exc:
            raise InvalidAddressError(f"invalid CIDR {cidr!r}: {exc}") from exc
        return cls(int(network.network_address), int(network.broadcast_address))

    @classmethod
    def from_addresses(cls, start: str, end: str) -> "AddressRange":
        return cls(parse_address(start), parse_address(end))

    @classmethod
    def single(cls, address: int) -> "AddressRange":
        return cls(address, address)

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------
    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def contains(self, other: "AddressRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def contains_address(self, address: int) -> bool:
        return self.start <= address <= self.end

    def overlaps(self, other: "AddressRange") -> bool:
        return self.start <= other.end and other.start <= self.end

    def is_adjacent(self, other: "AddressRange") -> bool:
        return self.end + 1 == other.start or other.end + 1 == self.start

    # ------------------------------------------------------------------
    # Set operations
    # ------------------------------------------------------------------
    def merge(self, other: "AddressRange") -> "AddressRange":
        if not (self.overlaps(other) or self.is_adjacent(other)):
            raise ValueError(f"cannot merge disjoint ranges {self} and {other}")
        return AddressRange(min(self.start, other.start), max(self.end, other.end))

    def intersect(self, other: "AddressRange") -> Optional["AddressRange"]:
        if not self.overlaps(other):
            return None
        return AddressRange(max(self.start, other.start), min(self.end, other.end))

    def subtract(self, other: "AddressRange") -> List["AddressRange"]:
        """Return the pieces of ``self`` not covered by ``other``."""

        if not self.overlaps(other):
            return [self]
        pieces: List[AddressRange] = []
        if other.start > self.start:
            pieces.append(AddressRange(self.start, other.start - 1))
        if other.end < self.end:
            pieces.append(AddressRange(other.end + 1, self.end))
        return pieces

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def to_cidr(self) -> Optional[str]:
        """Return CIDR notation when the range is a power-of-two aligned block."""

        size = self.size
        if size & (size - 1) or self.start % size:
            return None
        prefix = 32 - (size.bit_length() - 1)
        return f"{format_address(self.start)}/{prefix}"

    def addresses(self) -> Iterator[str]:
        for value in range(self.start, self.end + 1):
            yield format_address(value)

    @property
    def start_address(self) -> str:
        return format_address(self.start)

    @property
    def end_address(self) -> str:
        return format_address(self.end)

    def __str__(self) -> str:
        return f"{self.start_address}-{self.end_address}"


def parse_range(value: str) -> AddressRange:
    """Parse ``a.b.c.d/nn``, ``a.b.c.d-e.f.g.h`` or a single address."""

    if not isinstance(value, str) or not value.strip():
        raise InvalidAddressError(f"invalid address range {value!r}")
    text = value.strip()
    if "/" in text:
        return AddressRange.from_cidr(text)
    if "-" in text:
        start, _, end = text.partition("-")
        return AddressRange.from_addresses(start, end)
    return AddressRange.single(parse_address(text))
