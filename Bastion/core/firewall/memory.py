"""
Memory Backend — In-Process Firewall
======================================
A FirewallBackend that keeps its rules in memory and touches nothing
on the host. Used for dry runs and as the reference behaviour in tests.

Unlike the command-line backends this one is internally locked, so it
tolerates concurrent callers.
"""

import logging
import threading
from typing import Iterable, Iterator, Sequence

from Bastion.core.firewall.addresses import filter_firewall_addresses, normalize_firewall_address
from Bastion.core.firewall.backend import FirewallBackend
from Bastion.core.firewall.ranges import IPAddressRange, PortRange

logger = logging.getLogger("bastion.memory")


class MemoryFirewall(FirewallBackend):
    """Firewall that only records what it would do."""

    custom_name = "memory"

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._blocked: dict[str, None] = {}     # Insertion-ordered set
        self._allowed: dict[str, None] = {}
        self._range_rules: dict[str, tuple[list[IPAddressRange], list[PortRange]]] = {}

    def initialize(self, rule_prefix: str) -> None:
        self._rule_prefix = rule_prefix
        logger.info("MemoryFirewall initialized | prefix=%s", rule_prefix)

    # ── Address Lists ───────────────────────────────────────────────────

    def block_addresses(self, addresses: Sequence[str]) -> bool:
        with self._lock:
            return self._replace(self._blocked, addresses, "block")

    def allow_addresses(self, addresses: Sequence[str]) -> bool:
        with self._lock:
            return self._replace(self._allowed, addresses, "allow")

    def _replace(self, target: dict[str, None], addresses: Sequence[str], kind: str) -> bool:
        to_add, to_remove = self._reconcile(target, filter_firewall_addresses(addresses))
        for address in to_remove:
            del target[address]
        for address in to_add:
            target[address] = None
        logger.info(
            "[dry-run] %s list: +%d -%d (total %d)",
            kind, len(to_add), len(to_remove), len(target),
        )
        return True

    # ── Range Rules ─────────────────────────────────────────────────────

    def block_ranges(
        self,
        rule_prefix: str,
        ranges: Iterable[IPAddressRange],
        allowed_ports: Sequence[PortRange] = (),
    ) -> None:
        with self._lock:
            ranges = list(ranges)
            self._range_rules[rule_prefix] = (ranges, list(allowed_ports))
        logger.info(
            "[dry-run] range rule %s: %d ranges, %d allowed port ranges",
            rule_prefix, len(ranges), len(allowed_ports),
        )

    def range_rules(self) -> dict[str, tuple[list[IPAddressRange], list[PortRange]]]:
        """Snapshot of the range rules, keyed by rule prefix."""
        with self._lock:
            return dict(self._range_rules)

    # ── Queries ─────────────────────────────────────────────────────────

    def is_blocked(self, address: str) -> bool:
        normalized, ok = normalize_firewall_address(address)
        with self._lock:
            return ok and normalized in self._blocked

    def is_allowed(self, address: str) -> bool:
        normalized, ok = normalize_firewall_address(address)
        with self._lock:
            return ok and normalized in self._allowed

    def enumerate_blocked(self) -> Iterator[str]:
        with self._lock:
            snapshot = list(self._blocked)
        yield from snapshot

    def enumerate_allowed(self) -> Iterator[str]:
        with self._lock:
            snapshot = list(self._allowed)
        yield from snapshot
