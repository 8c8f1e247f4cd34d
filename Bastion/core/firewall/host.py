"""
Host — Operating System Identification
========================================
Works out which OS family, version and distribution/edition the process
runs on. The family decides which firewall backend gets selected.

Probing shells out to native utilities and parses their free-form
output:
  - Linux:   /etc/*release* (os-release and lsb-release style files)
  - Windows: wmic table output, falling back to a CIM query
  - Mac:     fixed name, no probing

initialize_host_profile() is called once at startup. It never raises;
anything that goes wrong is logged and the profile keeps whatever it
had already learned.
"""

import json
import logging
import os
import platform
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from Bastion.core.firewall.process import ProcessResult, run_process, scratch_file

logger = logging.getLogger("bastion.host")

Runner = Callable[..., ProcessResult]


# ─────────────────────── Data Model ─────────────────────────────────────────

class HostFamily(str, Enum):
    """Coarse OS classification used for backend selection."""
    WINDOWS = "Windows"
    LINUX   = "Linux"
    MAC     = "Mac"
    UNKNOWN = "Unknown"

    @classmethod
    def from_name(cls, name: str) -> Optional["HostFamily"]:
        """
        Case-insensitive lookup by family name ("linux" -> LINUX).
        "OSX" and "macOS" are accepted for MAC.
        """
        name = (name or "").strip().lower()
        for family in cls:
            if family.value.lower() == name:
                return family
        return _FAMILY_ALIASES.get(name)


# Other names the Mac family goes by
_FAMILY_ALIASES = {
    "osx":   HostFamily.MAC,
    "macos": HostFamily.MAC,
}


# platform.system() -> family
_SYSTEM_FAMILIES = {
    "linux":   HostFamily.LINUX,
    "windows": HostFamily.WINDOWS,
    "darwin":  HostFamily.MAC,
}


def family_for_system(system: Optional[str]) -> HostFamily:
    """Map a platform.system() string to a HostFamily (Unknown if unrecognized)."""
    return _SYSTEM_FAMILIES.get((system or "").strip().lower(), HostFamily.UNKNOWN)


@dataclass(frozen=True)
class HostProfile:
    """Immutable facts about the running host."""
    family: HostFamily = HostFamily.UNKNOWN
    version: str = ""
    friendly_name: str = ""
    description: str = ""

    def summary(self) -> str:
        """Single-line description for diagnostics."""
        return (
            f"Name: {self.family.value}, Version: {self.version}, "
            f"Friendly Name: {self.friendly_name}, Description: {self.description}"
        )

    def __str__(self) -> str:
        return self.summary()


# ─────────────────────── Text Extraction ────────────────────────────────────

# Characters stripped from every extracted value
_TRIM_CHARS = "[]\"'() \r\n\t"

LINUX_ID_PATTERN      = r"^(?:ID|DISTRIB_ID)=(?P<value>.*?)$"
LINUX_NAME_PATTERN    = r"^(?:NAME|DISTRIB_CODENAME)=(?P<value>.+)$"
LINUX_VERSION_PATTERN = r"^VERSION_ID=(?P<value>.+)$"

WMIC_ARGS = '/C wmic path Win32_OperatingSystem get Caption,Version /format:table > "{path}"'
CIM_QUERY = (
    "Get-CimInstance -ClassName Win32_OperatingSystem | "
    "Select-Object -First 1 Caption, Version | ConvertTo-Json -Compress"
)


def extract_value(text: str, pattern: str, default: str) -> str:
    """
    Return the `value` group of the first line matching `pattern`.

    Matching is case-insensitive and multi-line. The captured value is
    stripped of quotes, brackets, parentheses and whitespace. If nothing
    matches, `default` is returned.
    """
    match = re.search(pattern, text or "", re.IGNORECASE | re.MULTILINE)
    if match:
        return match.group("value").strip(_TRIM_CHARS)
    return default


def parse_wmic_table(text: str) -> Optional[tuple[str, str]]:
    """
    Parse `wmic ... get Caption,Version /format:table` output.

    The header line gives the column where "Version" starts; the first
    data row is split at that column into (caption, version).
    """
    lines = [line for line in (text or "").splitlines() if line.strip()]
    if len(lines) < 2:
        return None

    version_index = lines[0].find("Version")
    if version_index < 0:
        return None

    row = lines[1]
    return row[:version_index].strip(), row[version_index:].strip()


def parse_cim_json(text: str) -> Optional[tuple[str, str]]:
    """Parse ConvertTo-Json output of the CIM query, first record only."""
    if not (text or "").strip():
        return None

    data = json.loads(text)
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]

    caption = (data.get("Caption") or "").strip()
    version = (data.get("Version") or "").strip()
    if not caption and not version:
        return None
    return caption, version


# ─────────────────────── Output Files ───────────────────────────────────────

def _read_text(path: str) -> str:
    """Read a utility's output file; wmic writes UTF-16 when redirected."""
    with open(path, "rb") as f:
        raw = f.read()
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16", errors="replace")
    return raw.decode("utf-8-sig", errors="replace")


# ─────────────────────── Platform Details ───────────────────────────────────

def _inspect_linux(facts: dict, runner: Runner) -> None:
    with scratch_file() as path:
        runner("/bin/bash", ["-c", f"cat /etc/*release* > {shlex.quote(path)}"])
        text = _read_text(path) if os.path.exists(path) else ""

    friendly_name = extract_value(text, LINUX_ID_PATTERN, "")
    if friendly_name:
        code_name = extract_value(text, LINUX_NAME_PATTERN, "")
        if code_name:
            friendly_name += " - " + code_name
        facts["version"] = extract_value(text, LINUX_VERSION_PATTERN, facts["version"])
    facts["friendly_name"] = friendly_name


def _inspect_windows(facts: dict, runner: Runner) -> None:
    parsed = None
    with scratch_file() as path:
        runner("cmd", WMIC_ARGS.format(path=path))
        if os.path.exists(path):
            parsed = parse_wmic_table(_read_text(path))

    if parsed is None:
        # wmic is gone from recent Windows builds
        logger.info("wmic returned nothing, falling back to CIM query")
        result = runner(
            "powershell",
            ["-NoProfile", "-NonInteractive", "-Command", CIM_QUERY],
        )
        parsed = parse_cim_json(result.stdout)

    if parsed:
        facts["friendly_name"], facts["version"] = parsed


def _inspect_mac(facts: dict) -> None:
    # No utility probing on Mac; mac_ver() is enough for a version
    facts["friendly_name"] = "OSX"
    mac_version = platform.mac_ver()[0]
    if mac_version:
        facts["version"] = mac_version


# ─────────────────────── Entry Point ────────────────────────────────────────

def initialize_host_profile(
    system: Optional[str] = None,
    runner: Runner = run_process,
) -> HostProfile:
    """
    Identify the running host.

    Args:
        system: platform.system() value to use (None = detect).
        runner: run_process-compatible callable used for probing.

    Returns:
        HostProfile. Never raises; failed lookups leave defaults.
    """
    facts = {
        "family": HostFamily.UNKNOWN,
        "version": "",
        "friendly_name": "",
        "description": "",
    }

    try:
        facts["version"] = platform.release()
        facts["description"] = " ".join(
            part for part in (platform.system(), platform.release(), platform.version()) if part
        )

        if system is None:
            system = platform.system()
        family = family_for_system(system)
        facts["family"] = family

        if family is HostFamily.LINUX:
            _inspect_linux(facts, runner)
        elif family is HostFamily.WINDOWS:
            _inspect_windows(facts, runner)
        elif family is HostFamily.MAC:
            _inspect_mac(facts)
        else:
            facts["friendly_name"] = "Unknown"

    except Exception:
        logger.exception("Failed to identify host operating system")

    profile = HostProfile(**facts)
    logger.info("Host profile: %s", profile)
    return profile
