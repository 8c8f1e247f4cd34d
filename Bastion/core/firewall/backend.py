"""
Firewall Backend — Abstract Firewall Interface
================================================
Defines the abstract base class every firewall backend implements.
Concrete implementations (IptablesFirewall, FirewalldFirewall,
WindowsFirewall, MemoryFirewall) inherit from this and provide the
platform-specific rule handling.

Nothing outside a backend should call iptables, netsh or similar
directly; the rest of Bastion only holds a FirewallBackend.

Backends are single-writer: block/allow updates against the same
instance must be serialized by the caller unless a backend says
otherwise.
"""

from abc import ABC, abstractmethod
from typing import ClassVar, Iterable, Iterator, Optional, Sequence

from Bastion.core.firewall.host import HostFamily
from Bastion.core.firewall.ranges import IPAddressRange, PortRange


class FirewallBackend(ABC):
    """
    Abstract base class for firewall manipulation.

    Class attributes describe how the backend is registered:
        required_family: the HostFamily it runs on (None = any)
        custom_name:     short name accepted by selection overrides
    """

    required_family: ClassVar[Optional[HostFamily]] = None
    custom_name: ClassVar[Optional[str]] = None

    def __init__(self):
        self._rule_prefix: Optional[str] = None

    @property
    def rule_prefix(self) -> str:
        """Namespace prefix for every rule/object this backend manages."""
        if self._rule_prefix is None:
            raise RuntimeError(f"{type(self).__name__} used before initialize()")
        return self._rule_prefix

    @property
    def name(self) -> str:
        return self.custom_name or type(self).__name__

    # ── Setup ───────────────────────────────────────────────────────────

    @abstractmethod
    def initialize(self, rule_prefix: str) -> None:
        """
        Prepare the firewall for use. Idempotent.

        Args:
            rule_prefix: Namespace for all managed rules, so this deployment
                         never collides with unrelated rules on the host.
        """
        ...

    # ── Address Lists ───────────────────────────────────────────────────

    @abstractmethod
    def block_addresses(self, addresses: Sequence[str]) -> bool:
        """
        Replace the managed block list with exactly `addresses`.

        Missing entries are added and stale ones removed; an empty
        sequence clears every managed block. Errors are logged.

        Returns:
            True if the whole reconciliation succeeded, False otherwise.
        """
        ...

    @abstractmethod
    def allow_addresses(self, addresses: Sequence[str]) -> bool:
        """
        Replace the managed allow list with exactly `addresses`.
        Allowed addresses bypass blocking on all ports.

        Returns:
            True if the whole reconciliation succeeded, False otherwise.
        """
        ...

    # ── Range Rules ─────────────────────────────────────────────────────

    @abstractmethod
    def block_ranges(
        self,
        rule_prefix: str,
        ranges: Iterable[IPAddressRange],
        allowed_ports: Sequence[PortRange] = (),
    ) -> None:
        """
        Delete any rules under `rule_prefix`, then block all `ranges`
        on every port except `allowed_ports`.

        Independent of the address-level block list.
        """
        ...

    # ── Queries ─────────────────────────────────────────────────────────

    @abstractmethod
    def is_blocked(self, address: str) -> bool:
        """Whether `address` is on the managed block list."""
        ...

    @abstractmethod
    def is_allowed(self, address: str) -> bool:
        """Whether `address` is on the managed allow list."""
        ...

    @abstractmethod
    def enumerate_blocked(self) -> Iterator[str]:
        """Yield every managed blocked address. Re-reads state on each call."""
        ...

    @abstractmethod
    def enumerate_allowed(self) -> Iterator[str]:
        """Yield every managed allowed address. Re-reads state on each call."""
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _reconcile(
        current: Iterable[str],
        wanted: Iterable[str],
    ) -> tuple[list[str], list[str]]:
        """
        Diff two address collections.

        Returns:
            (to_add, to_remove), each in a stable order.
        """
        current_list = list(dict.fromkeys(current))
        wanted_list = list(dict.fromkeys(wanted))
        current_set = set(current_list)
        wanted_set = set(wanted_list)
        to_add = [a for a in wanted_list if a not in current_set]
        to_remove = [a for a in current_list if a not in wanted_set]
        return to_add, to_remove
