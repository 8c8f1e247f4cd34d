"""
Terminal Colors — ANSI color utilities for Bastion console output.
===================================================================
Uses colorama so the same escape codes work on Windows consoles.

Color scheme:
  - Green       → success / selected backend
  - Yellow      → warnings, commands being executed
  - Red         → errors
  - Blue        → host / status info
  - Dark gray   → debug output
"""

import logging
import os

import colorama

# Translate ANSI codes on legacy Windows consoles, no-op elsewhere
colorama.just_fix_windows_console()


# ─────────────────────────── ANSI Codes ─────────────────────────────────────

class _Colors:
    """ANSI escape codes for terminal coloring."""
    RESET     = colorama.Style.RESET_ALL
    BOLD      = colorama.Style.BRIGHT
    DIM       = colorama.Style.DIM

    RED       = colorama.Fore.RED
    GREEN     = colorama.Fore.GREEN
    YELLOW    = colorama.Fore.YELLOW
    BLUE      = colorama.Fore.BLUE
    MAGENTA   = colorama.Fore.MAGENTA
    CYAN      = colorama.Fore.CYAN
    WHITE     = colorama.Fore.WHITE
    GRAY      = colorama.Fore.LIGHTBLACK_EX

    BRIGHT_RED     = colorama.Fore.LIGHTRED_EX
    BRIGHT_GREEN   = colorama.Fore.LIGHTGREEN_EX
    BRIGHT_YELLOW  = colorama.Fore.LIGHTYELLOW_EX
    BRIGHT_BLUE    = colorama.Fore.LIGHTBLUE_EX
    BRIGHT_MAGENTA = colorama.Fore.LIGHTMAGENTA_EX
    BRIGHT_WHITE   = colorama.Fore.LIGHTWHITE_EX


C = _Colors()

_USE_COLOR = not os.getenv("NO_COLOR")


def _wrap(color: str, text: str) -> str:
    """Wrap text with color codes."""
    if not _USE_COLOR:
        return text
    return f"{color}{text}{C.RESET}"


# ─────────────────────────── Public API ─────────────────────────────────────

def error(text: str) -> str:
    """Style for error messages. Bright red."""
    return _wrap(C.BRIGHT_RED, text)


def warning(text: str) -> str:
    """Style for warning messages. Yellow."""
    return _wrap(C.YELLOW, text)


def info(text: str) -> str:
    """Style for system info and status. Bright blue."""
    return _wrap(C.BRIGHT_BLUE, text)


def debug(text: str) -> str:
    return _wrap(C.GRAY, text)


def success(text: str) -> str:
    """Style for success messages. Bold bright green."""
    return _wrap(f"{C.BOLD}{C.BRIGHT_GREEN}", text)


def header(text: str) -> str:
    return _wrap(f"{C.BOLD}{C.BRIGHT_WHITE}", text)


def label(tag: str, text: str, color: str = C.BRIGHT_BLUE) -> str:
    """Format a labeled message: [TAG] text."""
    tag_str = _wrap(f"{C.BOLD}{color}", f"[{tag}]")
    return f"{tag_str} {text}"


def divider(char: str = "─", width: int = 50) -> str:
    return _wrap(C.GRAY, char * width)


# ─────────────────── Convenience Print Functions ────────────────────────────

def print_error(text: str) -> None:
    print(label("ERROR", error(text), C.BRIGHT_RED))


def print_warning(text: str) -> None:
    print(label("WARN", warning(text), C.YELLOW))


def print_info(text: str) -> None:
    print(label("INFO", info(text), C.BRIGHT_BLUE))


def print_success(text: str) -> None:
    print(label("OK", success(text), C.BRIGHT_GREEN))


def print_status(tag: str, text: str) -> None:
    """Print a status label."""
    print(label(tag, text, C.BRIGHT_MAGENTA))


# ─────────────────────────── Logging ────────────────────────────────────────

_LEVEL_STYLES = {
    logging.DEBUG:    debug,
    logging.INFO:     info,
    logging.WARNING:  warning,
    logging.ERROR:    error,
    logging.CRITICAL: error,
}


class ColorFormatter(logging.Formatter):
    """Console log formatter that colors the level name."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        style = _LEVEL_STYLES.get(record.levelno)
        if style is None:
            return message
        return message.replace(record.levelname, style(record.levelname), 1)
