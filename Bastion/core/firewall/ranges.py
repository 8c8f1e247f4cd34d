"""
Ranges — IP Address & Port Range Types
========================================
Parsing for the address and port values that cross the firewall
contract:
  - IPAddressRange: single address, CIDR network or "first-last" span
  - PortRange:      single port or "low-high" span

Both are immutable and both have a try_parse() that never raises.
"""

import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

MIN_PORT = 0
MAX_PORT = 65535


# ─────────────────────── Address Ranges ─────────────────────────────────────

@dataclass(frozen=True)
class IPAddressRange:
    """An inclusive span of addresses of a single IP version."""
    first: IPAddress
    last: IPAddress

    @classmethod
    def parse(cls, text: str) -> "IPAddressRange":
        """
        Parse "1.2.3.4", "10.0.0.0/8" or "1.2.3.4-1.2.3.9".

        Raises:
            ValueError: if the text is not a valid address or range.
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("Empty address range")

        if "/" in text:
            network = ipaddress.ip_network(text, strict=False)
            return cls(network.network_address, network.broadcast_address)

        if "-" in text:
            left, right = (part.strip() for part in text.split("-", 1))
            first = ipaddress.ip_address(left)
            last = ipaddress.ip_address(right)
            if first.version != last.version:
                raise ValueError(f"Mixed IP versions in range: {text}")
            if first > last:
                raise ValueError(f"Range start is after range end: {text}")
            return cls(first, last)

        address = ipaddress.ip_address(text)
        return cls(address, address)

    @classmethod
    def try_parse(cls, text: Optional[str]) -> Optional["IPAddressRange"]:
        """Parse, returning None instead of raising on bad input."""
        try:
            return cls.parse(text)
        except (ValueError, TypeError):
            return None

    @property
    def version(self) -> int:
        return self.first.version

    @property
    def is_single(self) -> bool:
        return self.first == self.last

    def contains(self, address: Union[str, IPAddress]) -> bool:
        """Whether an address falls inside this range (False for other IP versions)."""
        if isinstance(address, str):
            try:
                address = ipaddress.ip_address(address.strip())
            except ValueError:
                return False
        if address.version != self.version:
            return False
        return self.first <= address <= self.last

    def networks(self) -> list[IPNetwork]:
        """The minimal list of CIDR networks covering this range."""
        return list(ipaddress.summarize_address_range(self.first, self.last))

    def __str__(self) -> str:
        if self.is_single:
            return str(self.first)
        nets = self.networks()
        if len(nets) == 1:
            return str(nets[0])
        return f"{self.first}-{self.last}"


# ─────────────────────── Port Ranges ────────────────────────────────────────

@dataclass(frozen=True)
class PortRange:
    """An inclusive span of TCP/UDP ports."""
    low: int
    high: int

    def __post_init__(self):
        if not (MIN_PORT <= self.low <= self.high <= MAX_PORT):
            raise ValueError(f"Invalid port range: {self.low}-{self.high}")

    @classmethod
    def parse(cls, text: Union[str, int]) -> "PortRange":
        """Parse "22", 22 or "1000-2000"."""
        if isinstance(text, int):
            return cls(text, text)
        text = text.strip()
        if "-" in text:
            low, high = text.split("-", 1)
            return cls(int(low), int(high))
        port = int(text)
        return cls(port, port)

    @classmethod
    def try_parse(cls, text: Union[str, int, None]) -> Optional["PortRange"]:
        if text is None:
            return None
        try:
            return cls.parse(text)
        except (ValueError, TypeError):
            return None

    def __str__(self) -> str:
        if self.low == self.high:
            return str(self.low)
        return f"{self.low}-{self.high}"


def merge_port_ranges(ranges: Iterable[PortRange]) -> list[PortRange]:
    """Sort and merge overlapping or adjacent port ranges."""
    merged: list[PortRange] = []
    for current in sorted(ranges, key=lambda r: (r.low, r.high)):
        if merged and current.low <= merged[-1].high + 1:
            last = merged[-1]
            merged[-1] = PortRange(last.low, max(last.high, current.high))
        else:
            merged.append(current)
    return merged


def invert_port_ranges(allowed: Iterable[PortRange]) -> list[PortRange]:
    """
    Return the ports NOT covered by `allowed`, as ranges over 0..65535.

    Firewalls that cannot express "block everything except these ports"
    get one block rule per returned range instead.
    """
    blocked: list[PortRange] = []
    next_port = MIN_PORT
    for r in merge_port_ranges(allowed):
        if r.low > next_port:
            blocked.append(PortRange(next_port, r.low - 1))
        next_port = r.high + 1
    if next_port <= MAX_PORT:
        blocked.append(PortRange(next_port, MAX_PORT))
    return blocked
