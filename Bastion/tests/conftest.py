"""
Shared fixtures: small simulators of ipset/iptables, firewall-cmd and
netsh that stand in for run_process, so backends can be exercised
without touching the real firewall.
"""

import ipaddress

import pytest

from Bastion.core.firewall.process import ProcessError, ProcessResult


class FakeHost:
    """Base simulator: records calls and enforces allowed exit codes."""

    def __init__(self):
        self.calls = []
        self.fail = set()           # Sub-commands that should exit 1

    def __call__(self, program, args="", allowed_exit_codes=(), input_text=None, **kwargs):
        args = list(args) if not isinstance(args, str) else args.split()
        self.calls.append((program, args))
        code, stdout = self.dispatch(program, args, input_text)
        result = ProcessResult(command=" ".join([program, *args]), exit_code=code, stdout=stdout)
        if allowed_exit_codes and code not in tuple(allowed_exit_codes):
            raise ProcessError(f"Program {result.command}: failed with exit code {code}", result)
        return result

    def dispatch(self, program, args, input_text):
        raise NotImplementedError

    def commands(self, program):
        return [args for prog, args in self.calls if prog == program]


# ─────────────────────── ipset / iptables ───────────────────────────────────

class FakeIptablesHost(FakeHost):

    def __init__(self):
        super().__init__()
        self.sets: dict[str, list[str]] = {}
        self.input_rules = {4: [], 6: []}   # INPUT chain rule specs
        self.chains = {4: {}, 6: {}}        # user chain -> rule specs

    def dispatch(self, program, args, input_text):
        if program == "ipset":
            return self._ipset(args, input_text)
        return self._iptables(4 if program == "iptables" else 6, args)

    def _ipset(self, args, input_text):
        cmd = args[0]
        if cmd in self.fail:
            return 1, ""
        if cmd == "create":
            self.sets.setdefault(args[1], [])
            return 0, ""
        if cmd == "list":
            if args[1] not in self.sets:
                return 1, ""
            header = f"Name: {args[1]}\nType: hash:net\nRevision: 6\nNumber of entries: {len(self.sets[args[1]])}\nMembers:\n"
            return 0, header + "".join(f"{m}\n" for m in self.sets[args[1]])
        if cmd == "restore":
            for line in (input_text or "").splitlines():
                if not line.strip():
                    continue
                op, name, entry = line.split()
                members = self.sets.setdefault(name, [])
                if op == "add" and entry not in members:
                    members.append(entry)
                elif op == "del" and entry in members:
                    members.remove(entry)
            return 0, ""
        if cmd == "test":
            return (0 if args[2] in self.sets.get(args[1], []) else 1), ""
        if cmd == "destroy":
            return (0 if self.sets.pop(args[1], None) is not None else 1), ""
        return 1, ""

    def _iptables(self, version, args):
        op, chain, rule = args[0], args[1], args[2:]
        rules = self.input_rules[version]
        chains = self.chains[version]
        if op == "-C":
            return (0 if rule in rules else 1), ""
        if op == "-I":
            rules.insert(0, rule)
            return 0, ""
        if op == "-A":
            if chain == "INPUT":
                rules.append(rule)
            elif chain in chains:
                chains[chain].append(rule)
            else:
                return 1, ""
            return 0, ""
        if op == "-D":
            if rule in rules:
                rules.remove(rule)
                return 0, ""
            return 1, ""
        if op == "-N":
            if chain in chains:
                return 1, ""
            chains[chain] = []
            return 0, ""
        if op == "-F":
            if chain not in chains:
                return 1, ""
            chains[chain] = []
            return 0, ""
        if op == "-X":
            if chain not in chains or any(chain in r for r in rules):
                return 1, ""
            del chains[chain]
            return 0, ""
        return 1, ""


# ─────────────────────── firewall-cmd ───────────────────────────────────────

class FakeFirewalldHost(FakeHost):

    def __init__(self):
        super().__init__()
        self.ipsets: dict[str, list[str]] = {}
        self.sources = {"drop": [], "trusted": []}
        self.rich_rules: list[str] = []
        self.reloads = 0

    def dispatch(self, program, args, input_text):
        if args == ["--reload"]:
            self.reloads += 1
            return 0, ""
        assert args[0] == "--permanent"
        opts = {}
        for arg in args[1:]:
            key, _, value = arg.partition("=")
            opts[key] = value

        if "--get-ipsets" in opts:
            return 0, " ".join(self.ipsets)
        if "--new-ipset" in opts:
            if opts["--new-ipset"] in self.ipsets:
                return 26, ""
            self.ipsets[opts["--new-ipset"]] = []
            return 0, ""
        if "--delete-ipset" in opts:
            return (0 if self.ipsets.pop(opts["--delete-ipset"], None) is not None else 1), ""
        if "--query-source" in opts:
            return (0 if opts["--query-source"] in self.sources[opts["--zone"]] else 1), ""
        if "--add-source" in opts:
            self.sources[opts["--zone"]].append(opts["--add-source"])
            return 0, ""
        if "--list-rich-rules" in opts:
            return 0, "\n".join(self.rich_rules)
        if "--add-rich-rule" in opts:
            self.rich_rules.append(opts["--add-rich-rule"])
            return 0, ""
        if "--remove-rich-rule" in opts:
            rule = opts["--remove-rich-rule"]
            if rule in self.rich_rules:
                self.rich_rules.remove(rule)
                return 0, ""
            return 1, ""

        name = opts.get("--ipset")
        if name not in self.ipsets:
            return 122, ""
        entries = self.ipsets[name]
        if "--get-entries" in opts:
            return 0, "\n".join(entries)
        if "--query-entry" in opts:
            return (0 if opts["--query-entry"] in entries else 1), ""
        if "--add-entries-from-file" in opts or "--remove-entries-from-file" in opts:
            if "entries" in self.fail:
                return 1, ""
            adding = "--add-entries-from-file" in opts
            path = opts["--add-entries-from-file"] if adding else opts["--remove-entries-from-file"]
            with open(path, encoding="utf-8") as f:
                for line in f.read().splitlines():
                    if adding and line not in entries:
                        entries.append(line)
                    elif not adding and line in entries:
                        entries.remove(line)
            return 0, ""
        return 1, ""


# ─────────────────────── netsh ──────────────────────────────────────────────

def _netsh_display(entry):
    """How netsh echoes a remoteip entry back."""
    if "-" in entry:
        return entry
    net = ipaddress.ip_network(entry, strict=False)
    if net.version == 4:
        return f"{net.network_address}/{net.netmask}" if net.prefixlen < 32 else f"{net.network_address}/32"
    return f"{net.network_address}/{net.prefixlen}"


class FakeNetshHost(FakeHost):

    def __init__(self):
        super().__init__()
        self.rules: dict[str, dict[str, str]] = {
            "Core Networking - DHCP (DHCP-In)": {"remoteip": "Any", "action": "allow"},
        }

    def dispatch(self, program, args, input_text):
        assert program == "netsh" and args[:2] == ["advfirewall", "firewall"]
        cmd, args = args[2], args[3:]
        if cmd in self.fail:
            return 1, ""
        if cmd == "show":
            return self._show()

        fields = {}
        for arg in args:
            key, sep, value = arg.partition("=")
            if sep:
                fields[key] = value
        name = fields.pop("name", None)

        if cmd == "add":
            fields["remoteip"] = ",".join(_netsh_display(e) for e in fields["remoteip"].split(","))
            self.rules[name] = fields
            return 0, "Ok.\n"
        if cmd == "set":
            if name not in self.rules:
                return 1, "No rules match the specified criteria.\n"
            self.rules[name]["remoteip"] = ",".join(_netsh_display(e) for e in fields["remoteip"].split(","))
            return 0, "Updated 1 rule(s).\nOk.\n"
        if cmd == "delete":
            if self.rules.pop(name, None) is None:
                return 1, "No rules match the specified criteria.\n"
            return 0, "Deleted 1 rule(s).\nOk.\n"
        return 1, ""

    def _show(self):
        if not self.rules:
            return 1, "No rules match the specified criteria.\r\n"
        out = []
        for name, rule in self.rules.items():
            out += [
                "",
                f"Rule Name:                            {name}",
                "----------------------------------------------------------------------",
                "Enabled:                              Yes",
                "Direction:                            In",
                "Profiles:                             Domain,Private,Public",
                "Grouping:                             ",
                "LocalIP:                              Any",
                f"RemoteIP:                             {rule.get('remoteip', 'Any')}",
                f"Protocol:                             {rule.get('protocol', 'Any')}",
            ]
            if "localport" in rule:
                out.append(f"LocalPort:                            {rule['localport']}")
            out += [
                "Edge traversal:                       No",
                f"Action:                               {rule.get('action', 'block').capitalize()}",
            ]
        out += ["Ok.", ""]
        return 0, "\r\n".join(out)


@pytest.fixture
def iptables_host():
    return FakeIptablesHost()


@pytest.fixture
def firewalld_host():
    return FakeFirewalldHost()


@pytest.fixture
def netsh_host():
    return FakeNetshHost()
