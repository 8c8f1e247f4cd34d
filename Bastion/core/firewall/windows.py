"""
Windows Backend — Windows Defender Firewall
=============================================
Concrete FirewallBackend for Windows, driven through
`netsh advfirewall firewall`.

Addresses are packed into inbound rules named <prefix>Block_<n> and
<prefix>Allow_<n>, RULE_BATCH_SIZE addresses per rule. Every update
rewrites the rules in order and deletes the leftovers.

This is the ONLY file that should contain Windows firewall commands.
"""

import ipaddress
import logging
import re
from typing import Iterable, Iterator, Optional, Sequence

from Bastion.core.firewall.addresses import filter_firewall_addresses, normalize_firewall_address
from Bastion.core.firewall.backend import FirewallBackend
from Bastion.core.firewall.host import HostFamily, Runner
from Bastion.core.firewall.iptables import PROTOCOLS
from Bastion.core.firewall.process import run_process
from Bastion.core.firewall.ranges import IPAddressRange, PortRange, invert_port_ranges

logger = logging.getLogger("bastion.windows_firewall")

NETSH = "netsh"
RULE_BATCH_SIZE = 1000          # Remote addresses per firewall rule


def canonical_remote_ip(entry: str) -> str:
    """
    Express an address the way netsh lists it back, minus host masks.

    netsh prints single hosts as "1.2.3.4/32" and IPv4 networks in
    netmask form ("10.0.0.0/255.0.0.0"); both come back as plain
    addresses / prefix-length CIDRs here.
    """
    entry = entry.strip()
    if "/" in entry:
        net = ipaddress.ip_network(entry, strict=False)
        if net.prefixlen == net.max_prefixlen:
            return str(net.network_address)
        return str(net)
    if "-" in entry:
        r = IPAddressRange.parse(entry)
        return str(r.first) if r.is_single else f"{r.first}-{r.last}"
    return str(ipaddress.ip_address(entry))


def parse_netsh_rules(text: str) -> list[dict[str, str]]:
    """
    Parse `netsh advfirewall firewall show rule` output into dicts
    keyed by lower-cased field name ("name", "remoteip", "action", ...).
    """
    rules: list[dict[str, str]] = []
    current: Optional[dict[str, str]] = None
    for line in text.splitlines():
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip().lower()
        value = value.strip()
        if key == "rule name":
            current = {"name": value}
            rules.append(current)
        elif current is not None:
            current[key] = value
    return rules


def managed_rule_pattern(prefix: str) -> "re.Pattern[str]":
    """
    Names of the rules Bastion creates under `prefix`: the prefix, a batch
    index and an optional protocol suffix ("IPBan_Block_0", "Country_3_tcp").
    """
    suffixes = "|".join(f"_{p}" for p in PROTOCOLS)
    return re.compile(rf"{re.escape(prefix)}\d+(?:{suffixes})?")


def _batches(items: list[str], size: int) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class WindowsFirewall(FirewallBackend):
    """Windows Defender Firewall backend."""

    required_family = HostFamily.WINDOWS
    custom_name = "windows"

    def __init__(self, runner: Runner = run_process):
        super().__init__()
        self._run = runner

    def _netsh(self, *args: str, check: bool = True):
        return self._run(
            NETSH,
            ["advfirewall", "firewall", *args],
            allowed_exit_codes=(0,) if check else (),
        )

    @property
    def _block_prefix(self) -> str:
        return f"{self.rule_prefix}Block_"

    @property
    def _allow_prefix(self) -> str:
        return f"{self.rule_prefix}Allow_"

    # ── Setup ───────────────────────────────────────────────────────────

    def initialize(self, rule_prefix: str) -> None:
        # Rules are created on demand; nothing to prepare beyond the prefix
        self._rule_prefix = rule_prefix
        existing = len(self._managed_rules(self._block_prefix)) + len(self._managed_rules(self._allow_prefix))
        logger.info("WindowsFirewall initialized | prefix=%s | existing rules=%d", rule_prefix, existing)

    # ── Rule Listing ────────────────────────────────────────────────────

    def _managed_rules(self, prefix: str) -> list[dict[str, str]]:
        pattern = managed_rule_pattern(prefix)
        result = self._netsh("show", "rule", "name=all", "dir=in", check=False)
        return [r for r in parse_netsh_rules(result.stdout) if pattern.fullmatch(r["name"])]

    def _addresses_in_rules(self, prefix: str) -> list[str]:
        addresses: list[str] = []
        for rule in self._managed_rules(prefix):
            remote = rule.get("remoteip", "")
            if not remote or remote.lower() == "any":
                continue
            addresses.extend(canonical_remote_ip(a) for a in remote.split(",") if a.strip())
        return list(dict.fromkeys(addresses))

    def _delete_rule(self, name: str) -> None:
        self._netsh("delete", "rule", f"name={name}")

    # ── Address Lists ───────────────────────────────────────────────────

    def block_addresses(self, addresses: Sequence[str]) -> bool:
        return self._replace_rules(self._block_prefix, "block", addresses)

    def allow_addresses(self, addresses: Sequence[str]) -> bool:
        return self._replace_rules(self._allow_prefix, "allow", addresses)

    def _replace_rules(self, prefix: str, action: str, addresses: Sequence[str]) -> bool:
        try:
            wanted = [canonical_remote_ip(a) for a in filter_firewall_addresses(addresses)]
            wanted = list(dict.fromkeys(wanted))
            existing = {r["name"]: r for r in self._managed_rules(prefix)}
            current = self._addresses_in_rules(prefix)
            to_add, to_remove = self._reconcile(current, wanted)
            if not to_add and not to_remove:
                logger.info("%s rules unchanged (%d addresses)", prefix, len(wanted))
                return True
        except Exception as e:
            logger.error("Failed to read firewall rules %s*: %s", prefix, e)
            return False

        ok = True
        batches = _batches(wanted, RULE_BATCH_SIZE)
        for index, batch in enumerate(batches):
            name = f"{prefix}{index}"
            remote = ",".join(batch)
            try:
                if name in existing:
                    self._netsh("set", "rule", f"name={name}", "new", f"remoteip={remote}")
                else:
                    self._netsh(
                        "add", "rule", f"name={name}", "dir=in", f"action={action}",
                        "enable=yes", "profile=any", f"remoteip={remote}",
                    )
            except Exception as e:
                logger.error("Failed to write firewall rule %s: %s", name, e)
                ok = False

        keep = {f"{prefix}{i}" for i in range(len(batches))}
        for name in existing:
            if name not in keep:
                try:
                    self._delete_rule(name)
                except Exception as e:
                    logger.error("Failed to delete firewall rule %s: %s", name, e)
                    ok = False

        logger.info("%s rules: +%d -%d (total %d)", prefix, len(to_add), len(to_remove), len(wanted))
        return ok

    # ── Range Rules ─────────────────────────────────────────────────────

    def block_ranges(
        self,
        rule_prefix: str,
        ranges: Iterable[IPAddressRange],
        allowed_ports: Sequence[PortRange] = (),
    ) -> None:
        for rule in self._managed_rules(rule_prefix):
            self._delete_rule(rule["name"])

        remote = [str(r) for r in ranges]
        if not remote:
            return

        # netsh has no "all ports except", so block the complement instead
        blocked_ports = ",".join(
            str(PortRange(max(1, p.low), p.high))
            for p in invert_port_ranges(allowed_ports)
            if p.high >= 1
        ) if allowed_ports else ""

        for index, batch in enumerate(_batches(remote, RULE_BATCH_SIZE)):
            base = [
                "add", "rule", "dir=in", "action=block",
                "enable=yes", "profile=any", f"remoteip={','.join(batch)}",
            ]
            if not blocked_ports:
                self._netsh(*base, f"name={rule_prefix}{index}")
                continue
            for protocol in PROTOCOLS:
                self._netsh(
                    *base,
                    f"name={rule_prefix}{index}_{protocol}",
                    f"protocol={protocol}",
                    f"localport={blocked_ports}",
                )

        logger.info(
            "Range rule %s: %d ranges, %d allowed port ranges",
            rule_prefix, len(remote), len(allowed_ports),
        )

    # ── Queries ─────────────────────────────────────────────────────────

    def is_blocked(self, address: str) -> bool:
        return self._contains(self._block_prefix, address)

    def is_allowed(self, address: str) -> bool:
        return self._contains(self._allow_prefix, address)

    def _contains(self, prefix: str, address: str) -> bool:
        normalized, ok = normalize_firewall_address(address)
        if not ok:
            return False
        return canonical_remote_ip(normalized) in self._addresses_in_rules(prefix)

    def enumerate_blocked(self) -> Iterator[str]:
        yield from self._addresses_in_rules(self._block_prefix)

    def enumerate_allowed(self) -> Iterator[str]:
        yield from self._addresses_in_rules(self._allow_prefix)
