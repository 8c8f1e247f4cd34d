"""
Iptables Backend — Linux ipset + iptables
===========================================
Linux firewall built from ipset sets referenced by iptables rules:

  <prefix>Block / <prefix>Block6    hash:net sets, DROP in INPUT
  <prefix>Allow / <prefix>Allow6    hash:net sets, ACCEPT at the top of INPUT

Range rules from block_ranges() get their own set pair plus a chain
named after the rule prefix, which RETURNs for allowed ports and DROPs
everything else.

Set updates go through a single `ipset restore` per set, so each list
change is applied atomically.
"""

import logging
from typing import Iterable, Iterator, Sequence

from Bastion.core.firewall.addresses import filter_firewall_addresses, normalize_firewall_address
from Bastion.core.firewall.backend import FirewallBackend
from Bastion.core.firewall.host import HostFamily, Runner
from Bastion.core.firewall.process import run_process
from Bastion.core.firewall.ranges import IPAddressRange, PortRange

logger = logging.getLogger("bastion.iptables")

IPSET = "ipset"
IPTABLES = {4: "iptables", 6: "ip6tables"}
INET_FAMILY = {4: "inet", 6: "inet6"}
PROTOCOLS = ("tcp", "udp")


def ipset_entries(address: str) -> list[tuple[int, str]]:
    """
    Convert an address/range to the (version, entry) pairs ipset stores.

    Host entries are listed by ipset without a prefix length, so they are
    returned bare; anything wider becomes one CIDR per covering network.
    """
    entries = []
    for net in IPAddressRange.parse(address).networks():
        if net.prefixlen == net.max_prefixlen:
            entries.append((net.version, str(net.network_address)))
        else:
            entries.append((net.version, str(net)))
    return entries


def parse_ipset_members(text: str) -> list[str]:
    """Pull member entries out of `ipset list <set>` output."""
    members = []
    in_members = False
    for line in text.splitlines():
        line = line.strip()
        if not in_members:
            in_members = line.lower().startswith("members:")
            continue
        if line:
            members.append(line.split()[0])
    return members


class IptablesFirewall(FirewallBackend):
    """ipset/iptables firewall for Linux hosts."""

    required_family = HostFamily.LINUX
    custom_name = "iptables"

    def __init__(self, runner: Runner = run_process):
        super().__init__()
        self._run = runner

    # ── Naming ──────────────────────────────────────────────────────────

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

        for version in (4, 6):
            block_set = self._set_name(self._block_base, version)
            allow_set = self._set_name(self._allow_base, version)
            self._create_set(block_set, version)
            self._create_set(allow_set, version)
            self._ensure_rules(
                version,
                allow_rule=["INPUT", "-m", "set", "--match-set", allow_set, "src", "-j", "ACCEPT"],
                block_rule=["INPUT", "-m", "set", "--match-set", block_set, "src", "-j", "DROP"],
            )

        logger.info("IptablesFirewall initialized | prefix=%s", rule_prefix)

    def _create_set(self, set_name: str, version: int) -> None:
        self._run(
            IPSET,
            ["create", set_name, "hash:net", "family", INET_FAMILY[version], "-exist"],
            allowed_exit_codes=(0,),
        )

    def _ensure_rules(self, version: int, allow_rule: list[str], block_rule: list[str]) -> None:
        """
        Make sure both INPUT rules exist with the allow rule above the
        block rule. If either one is missing, both are re-inserted.
        """
        binary = IPTABLES[version]
        present = [self._run(binary, ["-C", *rule]).exit_code == 0 for rule in (allow_rule, block_rule)]
        if all(present):
            return

        for rule, exists in zip((allow_rule, block_rule), present):
            if exists:
                self._run(binary, ["-D", *rule])
        # -I puts each rule at the top, so insert the block rule first
        self._run(binary, ["-I", *block_rule], allowed_exit_codes=(0,))
        self._run(binary, ["-I", *allow_rule], allowed_exit_codes=(0,))

    # ── Address Lists ───────────────────────────────────────────────────

    def block_addresses(self, addresses: Sequence[str]) -> bool:
        return self._replace_sets(self._block_base, addresses)

    def allow_addresses(self, addresses: Sequence[str]) -> bool:
        return self._replace_sets(self._allow_base, addresses)

    def _replace_sets(self, base: str, addresses: Sequence[str]) -> bool:
        wanted: dict[int, list[str]] = {4: [], 6: []}
        for address in filter_firewall_addresses(addresses):
            for version, entry in ipset_entries(address):
                wanted[version].append(entry)

        ok = True
        for version in (4, 6):
            set_name = self._set_name(base, version)
            try:
                current = self._list_set(set_name)
                to_add, to_remove = self._reconcile(current, wanted[version])
                if to_add or to_remove:
                    self._restore(set_name, to_add, to_remove)
                logger.info("ipset %s: +%d -%d", set_name, len(to_add), len(to_remove))
            except Exception as e:
                logger.error("Failed to update ipset %s: %s", set_name, e)
                ok = False
        return ok

    def _restore(self, set_name: str, to_add: list[str], to_remove: list[str]) -> None:
        lines = [f"del {set_name} {entry}" for entry in to_remove]
        lines += [f"add {set_name} {entry}" for entry in to_add]
        self._run(
            IPSET,
            ["restore", "-exist"],
            allowed_exit_codes=(0,),
            input_text="\n".join(lines) + "\n",
        )

    def _list_set(self, set_name: str) -> list[str]:
        result = self._run(IPSET, ["list", set_name], allowed_exit_codes=(0,))
        return parse_ipset_members(result.stdout)

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

        for version in (4, 6):
            set_name = self._set_name(f"{rule_prefix}Ranges", version)
            self._delete_range_rule(version, rule_prefix, set_name)
            if not entries[version]:
                continue

            self._create_set(set_name, version)
            self._restore(set_name, entries[version], [])
            self._create_range_chain(version, rule_prefix, allowed_ports)
            self._run(
                IPTABLES[version],
                ["-A", "INPUT", "-m", "set", "--match-set", set_name, "src", "-j", rule_prefix],
                allowed_exit_codes=(0,),
            )
            logger.info(
                "Range rule %s (IPv%d): %d entries, %d allowed port ranges",
                rule_prefix, version, len(entries[version]), len(allowed_ports),
            )

    def _delete_range_rule(self, version: int, chain: str, set_name: str) -> None:
        """Tear down a previous block_ranges() rule; missing pieces are fine."""
        binary = IPTABLES[version]
        self._run(binary, ["-D", "INPUT", "-m", "set", "--match-set", set_name, "src", "-j", chain])
        self._run(binary, ["-F", chain])
        self._run(binary, ["-X", chain])
        self._run(IPSET, ["destroy", set_name])

    def _create_range_chain(self, version: int, chain: str, allowed_ports: Sequence[PortRange]) -> None:
        binary = IPTABLES[version]
        self._run(binary, ["-N", chain], allowed_exit_codes=(0,))
        for port_range in allowed_ports:
            dport = f"{port_range.low}:{port_range.high}"
            for protocol in PROTOCOLS:
                self._run(
                    binary,
                    ["-A", chain, "-p", protocol, "--dport", dport, "-j", "RETURN"],
                    allowed_exit_codes=(0,),
                )
        self._run(binary, ["-A", chain, "-j", "DROP"], allowed_exit_codes=(0,))

    # ── Queries ─────────────────────────────────────────────────────────

    def is_blocked(self, address: str) -> bool:
        return self._test(self._block_base, address)

    def is_allowed(self, address: str) -> bool:
        return self._test(self._allow_base, address)

    def _test(self, base: str, address: str) -> bool:
        normalized, ok = normalize_firewall_address(address)
        if not ok:
            return False
        for version, entry in ipset_entries(normalized):
            result = self._run(IPSET, ["test", self._set_name(base, version), entry])
            if result.exit_code != 0:
                return False
        return True

    def enumerate_blocked(self) -> Iterator[str]:
        return self._enumerate(self._block_base)

    def enumerate_allowed(self) -> Iterator[str]:
        return self._enumerate(self._allow_base)

    def _enumerate(self, base: str) -> Iterator[str]:
        for version in (4, 6):
            yield from self._list_set(self._set_name(base, version))
