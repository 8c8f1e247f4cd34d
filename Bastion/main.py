import sys
import os
import argparse
import logging
import traceback

# Add parent directory to sys.path FIRST (before any Bastion imports)
current_dir = os.path.dirname(os.path.abspath(__file__))
parent_dir = os.path.dirname(current_dir)
if parent_dir not in sys.path:
    sys.path.insert(0, parent_dir)

from Bastion import config
from Bastion.core import colors as clr
from Bastion.core.firewall import (
    FirewallSelectionError,
    ProcessError,
    default_registry,
    dry_run_registry,
    initialize_host_profile,
)

logger = logging.getLogger("bastion.main")


def setup_logging(level: str = config.LOG_LEVEL) -> None:
    """File log in LOGS_DIR plus a colored console handler."""
    log_file = os.path.join(config.LOGS_DIR, "bastion.log")
    fmt = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(fmt))

    console = logging.StreamHandler()
    console.setFormatter(clr.ColorFormatter('%(levelname)s %(name)s: %(message)s'))

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        handlers=[file_handler, console],
        force=True,
    )


def handle_exception(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logging.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))
    traceback.print_exception(exc_type, exc_value, exc_traceback)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bastion",
        description="Identify the host and select its firewall backend.",
    )
    parser.add_argument("--prefix", default=config.RULE_PREFIX,
                        help="Rule name prefix (default: %(default)s)")
    parser.add_argument("--firewall", action="append", default=[], metavar="FAMILY:NAME",
                        help="Backend override per OS family, e.g. Linux:firewalld (repeatable)")
    parser.add_argument("--dry-run", action="store_true", default=config.DRY_RUN,
                        help="Use the in-memory firewall instead of the host's")
    parser.add_argument("--os", action="store_true",
                        help="Print the host profile and exit")
    parser.add_argument("--backends", action="store_true",
                        help="List the firewall backends available on this host and exit")
    parser.add_argument("--list", action="store_true",
                        help="Print blocked and allowed addresses")
    parser.add_argument("--log-level", default=config.LOG_LEVEL,
                        help="Logging level (default: %(default)s)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level.upper())
    sys.excepthook = handle_exception

    try:
        overrides = config.parse_overrides(",".join(args.firewall)) if args.firewall \
            else dict(config.FIREWALL_OVERRIDES)
    except ValueError as e:
        clr.print_error(str(e))
        return 2

    profile = initialize_host_profile()
    clr.print_status("HOST", profile.summary())
    if args.os:
        return 0

    if args.dry_run:
        # Overrides name real backends; the dry-run registry only has MemoryFirewall
        registry, overrides = dry_run_registry(profile), {}
    else:
        registry = default_registry()

    if args.backends:
        candidates = registry.candidates(profile.family)
        if not candidates:
            clr.print_warning(f"No firewall backends for {profile.family.value}")
        for descriptor in candidates:
            clr.print_info(f"{descriptor.display_name} ({descriptor.name})")
        return 0

    try:
        firewall = registry.select(profile, overrides, args.prefix)
    except FirewallSelectionError as e:
        logger.error("Firewall selection failed: %s", e)
        clr.print_error(str(e))
        return 1
    except ProcessError as e:
        logger.error("Firewall initialization failed: %s", e)
        clr.print_error(f"Firewall initialization failed: {e}")
        return 1

    clr.print_success(f"Firewall: {firewall.name} | prefix={firewall.rule_prefix}")

    if args.list:
        print(clr.header("Blocked"))
        for address in firewall.enumerate_blocked():
            print(f"  {address}")
        print(clr.divider())
        print(clr.header("Allowed"))
        for address in firewall.enumerate_allowed():
            print(f"  {address}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
