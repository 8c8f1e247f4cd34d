"""
Firewalld Backend — Linux firewalld
=====================================
Linux firewall driven through firewall-cmd against the permanent
configuration, followed by a reload:

  <prefix>Block / <prefix>Block6    ipsets bound as sources of the "drop" zone
  <prefix>Allow / <prefix>Allow6    ipsets bound as sources of the "trusted" zone

Range rules use a <prefix>Ranges ipset pair plus rich rules, one per
blocked port span, since rich rules cannot say "all ports but these".
"""

import logging
from typing import Iterable, Iterator, Sequence

from Bastion.core.firewall.addresses import filter_firewall_addresses, normalize_firewall_address
from Bastion.core.firewall.backend import FirewallBackend
from Bastion.core.firewall.host import HostFamily, Runner
from Bastion.core.firewall.iptables import INET_FAMILY, PROTOCOLS, ipset_entries
from Bastion.core.firewall.process import run_process, scratch_file
from Bastion.core.firewall.ranges import IPAddressRange, PortRange, invert_port_ranges

logger = logging.getLogger("bastion.firewalld")

FIREWALL_CMD = "firewall-cmd"
BLOCK_ZONE = "drop"
ALLOW_ZONE = "trusted"


class FirewalldFirewall(FirewallBackend):
    """firewalld firewall for Linux hosts."""

    required_family = HostFamily.LINUX
    custom_name = "firewalld"

    def __init__(self, runner: Runner = run_process):
        super().__init__()
        self._run = runner

    def _cmd(self, *args: str, check: bool = True):
        return self._run(
            FIREWALL_CMD,
            ["--permanent", *args],
            allowed_exit_codes=(0,) if check else (),
        )

    def _reload(self) -> None:
        self._run(FIREWALL_CMD, ["--reload"], allowed_exit_codes=(0,))

    @staticmethod
    def _set_name(base: str, version: int) -> str:
        return base if version == 4 else f"{base}6"

    @property
    def _block_base(self) -> str:
        return f"{self.rule_prefix}Block"

    @property
    def _allow_base(self) -> str:
        return f"{self.rule_prefix}Allow"

    # ── Setup ───────────────────────────────────────────────────────────

    def initialize(self, rule_prefix: str) -> None:
        self._rule_prefix = rule_prefix

        existing = set(self._cmd("--get-ipsets").stdout.split())
        changed = False
        for base, zone in ((self._block_base, BLOCK_ZONE), (self._allow_base, ALLOW_ZONE)):
            for version in (4, 6):
                set_name = self._set_name(base, version)
                if set_name not in existing:
                    self._create_ipset(set_name, version)
                    changed = True
                source = f"ipset:{set_name}"
                if self._cmd(f"--zone={zone}", f"--query-source={source}", check=False).exit_code != 0:
                    self._cmd(f"--zone={zone}", f"--add-source={source}")
                    changed = True

        if changed:
            self._reload()
        logger.info("FirewalldFirewall initialized | prefix=%s", rule_prefix)

    def _create_ipset(self, set_name: str, version: int) -> None:
        self._cmd(
            f"--new-ipset={set_name}",
            "--type=hash:net",
            f"--option=family={INET_FAMILY[version]}",
        )

    # ── Address Lists ───────────────────────────────────────────────────

    def block_addresses(self, addresses: Sequence[str]) -> bool:
        return self._replace_ipsets(self._block_base, addresses)

    def allow_addresses(self, addresses: Sequence[str]) -> bool:
        return self._replace_ipsets(self._allow_base, addresses)

    def _replace_ipsets(self, base: str, addresses: Sequence[str]) -> bool:
        wanted: dict[int, list[str]] = {4: [], 6: []}
        for address in filter_firewall_addresses(addresses):
            for version, entry in ipset_entries(address):
                wanted[version].append(entry)

        ok = True
        changed = False
        for version in (4, 6):
            set_name = self._set_name(base, version)
            try:
                to_add, to_remove = self._reconcile(self._entries(set_name), wanted[version])
                if to_remove:
                    self._entries_from_file(set_name, "--remove-entries-from-file", to_remove)
                if to_add:
                    self._entries_from_file(set_name, "--add-entries-from-file", to_add)
                changed = changed or bool(to_add or to_remove)
                logger.info("ipset %s: +%d -%d", set_name, len(to_add), len(to_remove))
            except Exception as e:
                logger.error("Failed to update firewalld ipset %s: %s", set_name, e)
                ok = False

        if changed:
            try:
                self._reload()
            except Exception as e:
                logger.error("firewalld reload failed: %s", e)
                ok = False
        return ok

    def _entries_from_file(self, set_name: str, option: str, entries: list[str]) -> None:
        with scratch_file() as path:
            with open(path, "w", encoding="utf-8") as f:
                f.write("\n".join(entries) + "\n")
            self._cmd(f"--ipset={set_name}", f"{option}={path}")

    def _entries(self, set_name: str) -> list[str]:
        result = self._cmd(f"--ipset={set_name}", "--get-entries")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ── Range Rules ─────────────────────────────────────────────────────

    def block_ranges(
        self,
        rule_prefix: str,
        ranges: Iterable[IPAddressRange],
        allowed_ports: Sequence[PortRange] = (),
    ) -> None:
        entries: dict[int, list[str]] = {4: [], 6: []}
        for r in ranges:
            for version, entry in ipset_entries(str(r)):
                entries[version].append(entry)

        # firewalld rejects port 0
        blocked_ports = [
            PortRange(max(1, p.low), p.high)
            for p in invert_port_ranges(allowed_ports)
            if p.high >= 1
        ] if allowed_ports else []

        existing = set(self._cmd("--get-ipsets").stdout.split())
        for version in (4, 6):
            set_name = self._set_name(f"{rule_prefix}Ranges", version)
            self._delete_range_rules(set_name, existing)
            if not entries[version]:
                continue

            self._create_ipset(set_name, version)
            self._entries_from_file(set_name, "--add-entries-from-file", entries[version])
            for rule in self._range_rich_rules(set_name, blocked_ports):
                self._cmd(f"--add-rich-rule={rule}")
            logger.info(
                "Range rule %s (IPv%d): %d entries, %d allowed port ranges",
                rule_prefix, version, len(entries[version]), len(allowed_ports),
            )

        self._reload()

    @staticmethod
    def _range_rich_rules(set_name: str, blocked_ports: list[PortRange]) -> list[str]:
        if not blocked_ports:
            return [f'rule source ipset="{set_name}" drop']
        return [
            f'rule source ipset="{set_name}" port port="{p.low}-{p.high}" protocol="{protocol}" drop'
            for p in blocked_ports
            for protocol in PROTOCOLS
        ]

    def _delete_range_rules(self, set_name: str, existing_ipsets: set[str]) -> None:
        marker = f'ipset="{set_name}"'
        for rule in self._cmd("--list-rich-rules").stdout.splitlines():
            rule = rule.strip()
            if marker in rule:
                self._cmd(f"--remove-rich-rule={rule}", check=False)
        if set_name in existing_ipsets:
            self._cmd(f"--delete-ipset={set_name}", check=False)

    # ── Queries ─────────────────────────────────────────────────────────

    def is_blocked(self, address: str) -> bool:
        return self._query(self._block_base, address)

    def is_allowed(self, address: str) -> bool:
        return self._query(self._allow_base, address)

    def _query(self, base: str, address: str) -> bool:
        normalized, ok = normalize_firewall_address(address)
        if not ok:
            return False
        for version, entry in ipset_entries(normalized):
            set_name = self._set_name(base, version)
            if self._cmd(f"--ipset={set_name}", f"--query-entry={entry}", check=False).exit_code != 0:
                return False
        return True

    def enumerate_blocked(self) -> Iterator[str]:
        return self._enumerate(self._block_base)

    def enumerate_allowed(self) -> Iterator[str]:
        return self._enumerate(self._allow_base)

    def _enumerate(self, base: str) -> Iterator[str]:
        for version in (4, 6):
            yield from self._entries(self._set_name(base, version))
