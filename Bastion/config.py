import sys
import os
from dotenv import load_dotenv

def get_base_path():
    """Get absolute path to resource, works for dev and for PyInstaller"""
    if getattr(sys, 'frozen', False):
        return sys._MEIPASS
    else:
        return os.path.dirname(os.path.abspath(__file__))

def get_app_data_path():
    """Get writable path for logs and state"""
    if os.getenv("BASTION_DATA_DIR"):
        path = os.getenv("BASTION_DATA_DIR")
    elif getattr(sys, 'frozen', False):
        if os.name == "nt":
            path = os.path.join(os.getenv('PROGRAMDATA', 'C:\\ProgramData'), 'Bastion')
        else:
            path = "/var/lib/bastion"
    else:
        path = os.path.dirname(os.path.abspath(__file__))

    if not os.path.exists(path):
        os.makedirs(path, exist_ok=True)
    return path

def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")

def parse_overrides(text: str) -> dict[str, str]:
    """
    Parse "Linux:iptables,Windows:windows" into {"Linux": "iptables", ...}.
    Entries may be separated by commas or semicolons; "=" works as well as ":".
    """
    overrides: dict[str, str] = {}
    for entry in (text or "").replace(";", ",").split(","):
        entry = entry.strip()
        if not entry:
            continue
        sep = ":" if ":" in entry else "="
        if sep not in entry:
            raise ValueError(f"Invalid firewall override '{entry}', expected FAMILY:NAME")
        family, name = (part.strip() for part in entry.split(sep, 1))
        if not family or not name:
            raise ValueError(f"Invalid firewall override '{entry}', expected FAMILY:NAME")
        overrides[family] = name
    return overrides

load_dotenv()

# ─────────────────────── Firewall ───────────────────────────────────────────
# Prefix for every rule, ipset and firewall object Bastion manages
RULE_PREFIX = os.getenv("BASTION_RULE_PREFIX", "IPBan_")

# Backend per OS family, e.g. "Linux:firewalld". Empty = first registered backend.
FIREWALL_OVERRIDES = parse_overrides(os.getenv("BASTION_FIREWALL", ""))

# Prefix privileged commands with "sudo -n" when not running as root
USE_SUDO = _env_flag("BASTION_USE_SUDO")

# Use the in-memory firewall instead of touching the host
DRY_RUN = _env_flag("BASTION_DRY_RUN")

# ─────────────────────── Logging ────────────────────────────────────────────
LOG_LEVEL = os.getenv("BASTION_LOG_LEVEL", "INFO").upper()

# ─────────────────────── Paths ──────────────────────────────────────────────
BASE_DIR = get_base_path()
DATA_DIR = get_app_data_path()
LOGS_DIR = os.path.join(DATA_DIR, "logs")

if not os.path.exists(LOGS_DIR):
    os.makedirs(LOGS_DIR, exist_ok=True)
