"""
Test Suite — Host Profile
===========================
Tests for OS family detection, release-file / wmic / CIM parsing and
the never-raise guarantee of initialize_host_profile().
"""

import dataclasses
import json
import os
import shlex

import pytest

from Bastion.core.firewall import host
from Bastion.core.firewall.host import (
    HostFamily,
    HostProfile,
    extract_value,
    family_for_system,
    initialize_host_profile,
    parse_cim_json,
    parse_wmic_table,
)
from Bastion.core.firewall.process import ProcessResult


UBUNTU_RELEASE = """\
DISTRIB_ID=Ubuntu
DISTRIB_RELEASE=22.04
DISTRIB_CODENAME=jammy
DISTRIB_DESCRIPTION="Ubuntu 22.04.3 LTS"
PRETTY_NAME="Ubuntu 22.04.3 LTS"
NAME="Ubuntu"
VERSION_ID="22.04"
VERSION="22.04.3 LTS (Jammy Jellyfish)"
ID=ubuntu
ID_LIKE=debian
"""

FEDORA_RELEASE = """\
NAME="Fedora Linux"
VERSION="39 (Workstation Edition)"
ID=fedora
VERSION_ID=39
PRETTY_NAME="Fedora Linux 39 (Workstation Edition)"
"""

WMIC_TABLE = (
    "Caption                          Version     \r\n"
    "\r\n"
    "Microsoft Windows 10 Pro         10.0.19045  \r\n"
    "\r\n"
)


class FakeRunner:
    """
    Stands in for run_process. Writes `file_text` to whatever path the
    command redirects into and answers powershell with `stdout`.
    """

    def __init__(self, file_text=None, encoding="utf-8", stdout="", error=None):
        self.file_text = file_text
        self.encoding = encoding
        self.stdout = stdout
        self.error = error
        self.calls = []
        self.paths = []

    def __call__(self, program, args="", **kwargs):
        self.calls.append((program, args))
        if self.error is not None:
            raise self.error

        if program in ("/bin/bash", "cmd"):
            command = args[-1] if isinstance(args, list) else args
            path = shlex.split(command)[-1]
            self.paths.append(path)
            if self.file_text is not None:
                with open(path, "wb") as f:
                    f.write(self.file_text.encode(self.encoding))
            return ProcessResult(command=f"{program} {args}", exit_code=0)

        return ProcessResult(command=f"{program} {args}", exit_code=0, stdout=self.stdout)


@pytest.fixture
def generic_release(monkeypatch):
    monkeypatch.setattr(host.platform, "release", lambda: "6.1.0-generic")
    return "6.1.0-generic"


# ════════════════════════════════════════════════════════════════════════════
#  Extraction Helpers
# ════════════════════════════════════════════════════════════════════════════

class TestExtractValue:
    def test_first_match_wins(self):
        text = "ID=first\nID=second\n"
        assert extract_value(text, host.LINUX_ID_PATTERN, "") == "first"

    def test_case_insensitive(self):
        assert extract_value("version_id=12\n", host.LINUX_VERSION_PATTERN, "") == "12"

    def test_trims_quotes_and_brackets(self):
        text = 'NAME=" (\'[Debian GNU/Linux]\') "\r\n'
        assert extract_value(text, host.LINUX_NAME_PATTERN, "") == "Debian GNU/Linux"

    def test_default_when_missing(self):
        assert extract_value("FOO=bar", host.LINUX_ID_PATTERN, "fallback") == "fallback"

    def test_id_like_not_matched(self):
        assert extract_value("ID_LIKE=debian\n", host.LINUX_ID_PATTERN, "") == ""

    def test_empty_text(self):
        assert extract_value("", host.LINUX_ID_PATTERN, "x") == "x"
        assert extract_value(None, host.LINUX_ID_PATTERN, "x") == "x"


class TestParseWmicTable:
    def test_splits_at_version_column(self):
        assert parse_wmic_table(WMIC_TABLE) == ("Microsoft Windows 10 Pro", "10.0.19045")

    def test_header_only(self):
        assert parse_wmic_table("Caption   Version\r\n\r\n") is None

    def test_no_version_column(self):
        assert parse_wmic_table("Caption\nWindows\n") is None

    def test_empty(self):
        assert parse_wmic_table("") is None


class TestParseCimJson:
    def test_object(self):
        text = json.dumps({"Caption": "Microsoft Windows 11 Pro", "Version": "10.0.22631"})
        assert parse_cim_json(text) == ("Microsoft Windows 11 Pro", "10.0.22631")

    def test_first_record_only(self):
        text = json.dumps([
            {"Caption": "First", "Version": "1"},
            {"Caption": "Second", "Version": "2"},
        ])
        assert parse_cim_json(text) == ("First", "1")

    def test_empty(self):
        assert parse_cim_json("") is None
        assert parse_cim_json("[]") is None
        assert parse_cim_json('{"Caption": null, "Version": null}') is None


# ════════════════════════════════════════════════════════════════════════════
#  Family Detection
# ════════════════════════════════════════════════════════════════════════════

class TestHostFamily:
    @pytest.mark.parametrize("system,family", [
        ("Linux", HostFamily.LINUX),
        ("Windows", HostFamily.WINDOWS),
        ("Darwin", HostFamily.MAC),
        ("FreeBSD", HostFamily.UNKNOWN),
        ("", HostFamily.UNKNOWN),
        (None, HostFamily.UNKNOWN),
    ])
    def test_family_for_system(self, system, family):
        assert family_for_system(system) is family

    def test_from_name(self):
        assert HostFamily.from_name("linux") is HostFamily.LINUX
        assert HostFamily.from_name(" WINDOWS ") is HostFamily.WINDOWS
        assert HostFamily.from_name("Solaris") is None

    @pytest.mark.parametrize("name", ["Mac", "OSX", "osx", " macOS "])
    def test_mac_aliases(self, name):
        assert HostFamily.from_name(name) is HostFamily.MAC

    @pytest.mark.parametrize("system", ["Linux", "Windows", "Darwin", "SunOS", "", "CYGWIN_NT-10.0"])
    def test_family_always_resolves(self, system):
        profile = initialize_host_profile(system=system, runner=FakeRunner(error=OSError("boom")))
        assert profile.family in set(HostFamily)


# ════════════════════════════════════════════════════════════════════════════
#  Linux Probing
# ════════════════════════════════════════════════════════════════════════════

class TestLinuxProfile:
    def test_ubuntu(self, generic_release):
        runner = FakeRunner(UBUNTU_RELEASE)
        profile = initialize_host_profile(system="Linux", runner=runner)
        assert profile.family is HostFamily.LINUX
        assert profile.friendly_name == "Ubuntu - jammy"
        assert profile.version == "22.04"

    def test_fedora(self, generic_release):
        profile = initialize_host_profile(system="Linux", runner=FakeRunner(FEDORA_RELEASE))
        assert profile.friendly_name == "fedora - Fedora Linux"
        assert profile.version == "39"

    def test_no_id_keeps_generic_version(self, generic_release):
        text = 'NAME="Mystery"\nVERSION_ID=7\n'
        profile = initialize_host_profile(system="Linux", runner=FakeRunner(text))
        assert profile.friendly_name == ""
        assert profile.version == generic_release

    def test_id_without_version_id(self, generic_release):
        profile = initialize_host_profile(system="Linux", runner=FakeRunner("ID=alpine\n"))
        assert profile.friendly_name == "alpine"
        assert profile.version == generic_release

    def test_runs_bash_cat(self):
        runner = FakeRunner(UBUNTU_RELEASE)
        initialize_host_profile(system="Linux", runner=runner)
        program, args = runner.calls[0]
        assert program == "/bin/bash"
        assert args[0] == "-c"
        assert args[1].startswith("cat /etc/*release* > ")

    def test_temp_file_removed(self):
        runner = FakeRunner(UBUNTU_RELEASE)
        initialize_host_profile(system="Linux", runner=runner)
        assert runner.paths
        assert not os.path.exists(runner.paths[0])

    def test_missing_output_file(self, generic_release):
        profile = initialize_host_profile(system="Linux", runner=FakeRunner(file_text=None))
        assert profile.family is HostFamily.LINUX
        assert profile.friendly_name == ""
        assert profile.version == generic_release

    def test_runner_failure_is_swallowed(self, generic_release):
        profile = initialize_host_profile(system="Linux", runner=FakeRunner(error=RuntimeError("no bash")))
        assert profile.family is HostFamily.LINUX
        assert profile.version == generic_release
        assert profile.friendly_name == ""


# ════════════════════════════════════════════════════════════════════════════
#  Windows Probing
# ════════════════════════════════════════════════════════════════════════════

class TestWindowsProfile:
    def test_wmic_utf16(self):
        runner = FakeRunner(WMIC_TABLE, encoding="utf-16")
        profile = initialize_host_profile(system="Windows", runner=runner)
        assert profile.family is HostFamily.WINDOWS
        assert profile.friendly_name == "Microsoft Windows 10 Pro"
        assert profile.version == "10.0.19045"
        assert [c[0] for c in runner.calls] == ["cmd"]
        assert not os.path.exists(runner.paths[0])

    def test_wmic_command_line(self):
        runner = FakeRunner(WMIC_TABLE)
        initialize_host_profile(system="Windows", runner=runner)
        _, args = runner.calls[0]
        assert args.startswith("/C wmic path Win32_OperatingSystem get Caption,Version /format:table > ")

    def test_falls_back_to_cim(self):
        stdout = json.dumps({"Caption": "Microsoft Windows 11 Pro", "Version": "10.0.22631"})
        runner = FakeRunner(file_text=None, stdout=stdout)
        profile = initialize_host_profile(system="Windows", runner=runner)
        assert [c[0] for c in runner.calls] == ["cmd", "powershell"]
        assert profile.friendly_name == "Microsoft Windows 11 Pro"
        assert profile.version == "10.0.22631"

    def test_empty_wmic_output_falls_back(self):
        stdout = json.dumps({"Caption": "Windows Server 2022", "Version": "10.0.20348"})
        runner = FakeRunner(file_text="", stdout=stdout)
        profile = initialize_host_profile(system="Windows", runner=runner)
        assert profile.friendly_name == "Windows Server 2022"

    def test_garbage_cim_output_keeps_defaults(self, generic_release):
        runner = FakeRunner(file_text=None, stdout="this is not json")
        profile = initialize_host_profile(system="Windows", runner=runner)
        assert profile.family is HostFamily.WINDOWS
        assert profile.friendly_name == ""
        assert profile.version == generic_release


# ════════════════════════════════════════════════════════════════════════════
#  Other Platforms & Profile Object
# ════════════════════════════════════════════════════════════════════════════

class TestOtherPlatforms:
    def test_mac(self, monkeypatch):
        monkeypatch.setattr(host.platform, "mac_ver", lambda: ("14.2", ("", "", ""), "arm64"))
        runner = FakeRunner()
        profile = initialize_host_profile(system="Darwin", runner=runner)
        assert profile.family is HostFamily.MAC
        assert profile.friendly_name == "OSX"
        assert profile.version == "14.2"
        assert runner.calls == []

    def test_unknown(self):
        runner = FakeRunner()
        profile = initialize_host_profile(system="Plan9", runner=runner)
        assert profile.family is HostFamily.UNKNOWN
        assert profile.friendly_name == "Unknown"
        assert runner.calls == []


class TestHostProfile:
    def test_summary(self):
        profile = HostProfile(HostFamily.LINUX, "22.04", "Ubuntu - jammy", "Linux 6.1.0")
        assert profile.summary() == (
            "Name: Linux, Version: 22.04, Friendly Name: Ubuntu - jammy, Description: Linux 6.1.0"
        )
        assert str(profile) == profile.summary()

    def test_immutable(self):
        profile = HostProfile(HostFamily.LINUX)
        with pytest.raises(dataclasses.FrozenInstanceError):
            profile.version = "changed"

    def test_defaults(self):
        profile = HostProfile()
        assert profile.family is HostFamily.UNKNOWN
        assert profile.friendly_name == ""
