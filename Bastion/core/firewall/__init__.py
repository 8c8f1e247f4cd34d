"""
Firewall Package — Firewall Platform Layer
============================================
Provides a single firewall handle regardless of the host OS.

Usage:
    from Bastion.core.firewall import initialize_host_profile, get_firewall

    profile = initialize_host_profile()
    firewall = get_firewall(profile=profile, rule_prefix="IPBan_")
    firewall.block_addresses(["1.2.3.4", "5.6.7.0/24"])
"""

from typing import Mapping, Optional

from Bastion.core.firewall.addresses import (
    filter_firewall_addresses,
    is_firewall_address,
    normalize_firewall_address,
)
from Bastion.core.firewall.backend import FirewallBackend
from Bastion.core.firewall.firewalld import FirewalldFirewall
from Bastion.core.firewall.host import HostFamily, HostProfile, initialize_host_profile
from Bastion.core.firewall.iptables import IptablesFirewall
from Bastion.core.firewall.memory import MemoryFirewall
from Bastion.core.firewall.process import ProcessError, ProcessResult, run_process
from Bastion.core.firewall.ranges import IPAddressRange, PortRange
from Bastion.core.firewall.registry import (
    DEFAULT_RULE_PREFIX,
    BackendDescriptor,
    BackendRegistry,
    FirewallSelectionError,
    default_registry,
)
from Bastion.core.firewall.windows import WindowsFirewall


def get_firewall(
    overrides: Optional[Mapping[str, str]] = None,
    rule_prefix: Optional[str] = None,
    profile: Optional[HostProfile] = None,
    registry: Optional[BackendRegistry] = None,
) -> FirewallBackend:
    """
    Factory: return the initialized FirewallBackend for this host.

    Pass the profile computed at startup; it is only detected here when
    omitted. Raises FirewallSelectionError if no backend fits.
    """
    if profile is None:
        profile = initialize_host_profile()
    if registry is None:
        registry = default_registry()
    return registry.select(profile, overrides, rule_prefix)


def dry_run_registry(profile: HostProfile) -> BackendRegistry:
    """A registry holding only MemoryFirewall, valid for the host's family."""
    registry = BackendRegistry()
    registry.register(MemoryFirewall, family=profile.family)
    return registry


__all__ = [
    "get_firewall",
    "dry_run_registry",
    "FirewallBackend",
    "IptablesFirewall",
    "FirewalldFirewall",
    "WindowsFirewall",
    "MemoryFirewall",
    "BackendRegistry",
    "BackendDescriptor",
    "FirewallSelectionError",
    "DEFAULT_RULE_PREFIX",
    "default_registry",
    "HostFamily",
    "HostProfile",
    "initialize_host_profile",
    "IPAddressRange",
    "PortRange",
    "ProcessError",
    "ProcessResult",
    "run_process",
    "normalize_firewall_address",
    "is_firewall_address",
    "filter_firewall_addresses",
]
