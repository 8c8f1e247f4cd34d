"""
Addresses — Firewall Address Eligibility
==========================================
Decides whether a raw string may be handed to a firewall backend.

An address is eligible when it is non-empty, parses as an address or
range, and is not one of the unspecified/loopback literals. Nothing in
this module raises for bad input; callers get a clean (value, ok) pair.
"""

import logging
from typing import Iterable, Iterator, Optional

from Bastion.core.firewall.ranges import IPAddressRange

logger = logging.getLogger("bastion.addresses")

# Never forwarded to a backend as block targets
NEVER_BLOCK = frozenset({"0.0.0.0", "::0", "127.0.0.1", "::1"})


def normalize_firewall_address(raw: Optional[str]) -> tuple[Optional[str], bool]:
    """
    Clean an address for use in the firewall.

    Returns:
        (trimmed address, True) when eligible, otherwise (None, False).
        The address keeps its original case and range notation.
    """
    if raw is None or not isinstance(raw, str):
        return None, False

    normalized = raw.strip()
    if not normalized or normalized in NEVER_BLOCK:
        return None, False

    if IPAddressRange.try_parse(normalized) is None:
        return None, False

    return normalized, True


def is_firewall_address(raw: Optional[str]) -> bool:
    """Shorthand for the eligibility flag alone."""
    return normalize_firewall_address(raw)[1]


def filter_firewall_addresses(addresses: Iterable[Optional[str]]) -> Iterator[str]:
    """
    Yield the eligible addresses from `addresses`, normalized,
    without duplicates and in input order.
    """
    seen: set[str] = set()
    for raw in addresses:
        normalized, ok = normalize_firewall_address(raw)
        if not ok:
            logger.debug("Skipping ineligible firewall address: %r", raw)
            continue
        if normalized in seen:
            continue
        seen.add(normalized)
        yield normalized
