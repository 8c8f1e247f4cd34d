"""
Backend Registry — Firewall Backend Selection
===============================================
Maps each known FirewallBackend to the OS family it runs on, and picks
exactly one for the current host.

The table is explicit: backends are registered in code, in a fixed
order. Selection rules:
  1. Keep entries whose family matches the host profile
  2. With overrides: the entry named for this family must exist
  3. Without overrides: the first matching entry, in registration order
  4. No entries, or no entry for this family -> FirewallSelectionError
"""

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from Bastion.core.firewall.backend import FirewallBackend
from Bastion.core.firewall.host import HostFamily, HostProfile

logger = logging.getLogger("bastion.registry")

DEFAULT_RULE_PREFIX = "IPBan_"


class FirewallSelectionError(RuntimeError):
    """No firewall backend can be used on this host. Fatal at startup."""


# ─────────────────────── Descriptors ────────────────────────────────────────

@dataclass(frozen=True)
class BackendDescriptor:
    """A registered backend: how to build it and where it applies."""
    factory: Callable[[], FirewallBackend]
    family: HostFamily
    name: str                           # Intrinsic name (class name)
    custom_name: Optional[str] = None   # Short name for overrides

    def matches(self, wanted: str) -> bool:
        """Case-insensitive match against the name or custom name."""
        wanted = (wanted or "").strip().lower()
        if not wanted:
            return False
        return wanted == self.name.lower() or wanted == (self.custom_name or "").lower()

    @property
    def display_name(self) -> str:
        return self.custom_name or self.name


# ─────────────────────── Registry ───────────────────────────────────────────

class BackendRegistry:
    """Ordered table of known firewall backends."""

    def __init__(self):
        self._descriptors: list[BackendDescriptor] = []

    def register(
        self,
        factory: Callable[[], FirewallBackend],
        family: Optional[HostFamily] = None,
        custom_name: Optional[str] = None,
        name: Optional[str] = None,
    ) -> BackendDescriptor:
        """
        Add a backend to the table.

        For FirewallBackend subclasses, family and custom_name default to
        the class attributes required_family / custom_name.
        """
        family = family or getattr(factory, "required_family", None)
        if family is None:
            raise ValueError(f"Backend {factory!r} does not declare an OS family")

        descriptor = BackendDescriptor(
            factory=factory,
            family=family,
            name=name or getattr(factory, "__name__", repr(factory)),
            custom_name=custom_name if custom_name is not None else getattr(factory, "custom_name", None),
        )
        self._descriptors.append(descriptor)
        logger.debug("Registered firewall backend %s for %s", descriptor.name, family.value)
        return descriptor

    @property
    def count(self) -> int:
        return len(self._descriptors)

    def descriptors(self) -> list[BackendDescriptor]:
        return list(self._descriptors)

    def candidates(self, family: HostFamily) -> list[BackendDescriptor]:
        """Entries valid for `family`, in registration order."""
        return [d for d in self._descriptors if d.family == family]

    # ── Selection ───────────────────────────────────────────────────────

    def resolve(
        self,
        profile: HostProfile,
        overrides: Optional[Mapping[str, str]] = None,
    ) -> BackendDescriptor:
        """Choose the descriptor for this host without constructing it."""
        family = profile.family
        overrides = dict(overrides or {})

        if not self._descriptors:
            raise FirewallSelectionError(
                "No firewall backends are registered, at least one must implement FirewallBackend"
            )

        candidates = self.candidates(family)

        if overrides:
            wanted = _lookup_family(overrides, family)
            for descriptor in candidates:
                if wanted is not None and descriptor.matches(wanted):
                    return descriptor
            requested = ",".join(f"{k}:{v}" for k, v in overrides.items())
            raise FirewallSelectionError(
                f"Unable to find firewalls of types: {requested}, osname: {family.value}"
            )

        if not candidates:
            raise FirewallSelectionError(
                f"No firewall backend is available for OS family {family.value}"
            )

        if len(candidates) > 1:
            logger.info(
                "Multiple firewall backends for %s (%s), using %s",
                family.value,
                ", ".join(d.display_name for d in candidates),
                candidates[0].display_name,
            )
        return candidates[0]

    def select(
        self,
        profile: HostProfile,
        overrides: Optional[Mapping[str, str]] = None,
        rule_prefix: Optional[str] = None,
    ) -> FirewallBackend:
        """
        Build and initialize the firewall backend for this host.

        Args:
            profile:     The host profile from initialize_host_profile().
            overrides:   Optional {family name: backend name}.
            rule_prefix: Rule namespace; blank means DEFAULT_RULE_PREFIX.

        Raises:
            FirewallSelectionError: nothing suitable is registered.
        """
        descriptor = self.resolve(profile, overrides)
        prefix = rule_prefix if rule_prefix and rule_prefix.strip() else DEFAULT_RULE_PREFIX

        firewall = descriptor.factory()
        firewall.initialize(prefix)
        logger.info("Selected firewall %s for %s | prefix=%s", descriptor.display_name, profile.family.value, prefix)
        return firewall


def _lookup_family(overrides: Mapping[str, str], family: HostFamily) -> Optional[str]:
    """Find the override for `family`, matching keys case-insensitively."""
    for key, value in overrides.items():
        if HostFamily.from_name(key) is family:
            return value
    return None


def default_registry() -> BackendRegistry:
    """The backends shipped with Bastion, in preference order per family."""
    from Bastion.core.firewall.firewalld import FirewalldFirewall
    from Bastion.core.firewall.iptables import IptablesFirewall
    from Bastion.core.firewall.windows import WindowsFirewall

    registry = BackendRegistry()
    registry.register(IptablesFirewall)
    registry.register(FirewalldFirewall)
    registry.register(WindowsFirewall)
    return registry
