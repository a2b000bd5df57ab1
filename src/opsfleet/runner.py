#!/usr/bin/env python3
"""Main entry point for opsfleet."""

import argparse
import asyncio
import sys
from pathlib import Path

from .config import Config, load_config
from .errors import ConfigurationError, InventoryError
from .inventory import fetch_inventory, inventory_url_from_env
from .log import setup_logging
from .operator import Operator
from .results import MachineState, Result

# ANSI colors for different machines
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opsfleet",
        description="Run a shell command on a fleet of SSH machines concurrently",
    )
    parser.add_argument("config", type=Path, help="Path to YAML fleet file")
    parser.add_argument("command", help="Shell command to run on every target")
    parser.add_argument(
        "--only",
        action="append",
        metavar="NAME",
        help="Run only on this machine (repeatable)",
    )
    parser.add_argument(
        "--key",
        type=Path,
        help="Use this private key for every machine",
    )
    parser.add_argument(
        "--known-hosts",
        type=Path,
        help="Override the known_hosts file",
    )
    parser.add_argument(
        "--auto-add",
        action="store_true",
        help="Trust and record host keys seen for the first time",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Connection timeout per machine in seconds",
    )
    parser.add_argument(
        "--inventory",
        metavar="URL",
        default=inventory_url_from_env(),
        help="Also register machines from this inventory endpoint "
        "(default: $OPSFLEET_INVENTORY_URL)",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    _apply_overrides(config, args)

    try:
        operator = config.build_operator()
        url = args.inventory or (config.inventory.url if config.inventory else None)
        if url:
            timeout = config.inventory.timeout if config.inventory else 10.0
            records = asyncio.run(fetch_inventory(url, timeout=timeout))
            operator.register_inventory(
                records,
                config.defaults.user,
                config.default_credential(),
                config.defaults.port,
            )
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except InventoryError as e:
        print(f"Inventory error: {e}", file=sys.stderr)
        return 2

    if not len(operator):
        print("Error: no machines to run on", file=sys.stderr)
        return 2

    targets = args.only or None

    if not args.dashboard:
        # Run without TUI dashboard (default)
        results = _run_headless(operator, args.command, targets)
    else:
        from .dashboard import Dashboard

        app = Dashboard(operator, args.command, targets)
        app.run()
        results = app.results
        if results is None:
            print("Interrupted before all machines finished", file=sys.stderr)
            return 1

    # Check final status
    failed = [r.machine for r in results if not r.success]
    if failed:
        print(f"\nFailed machines: {', '.join(failed)}", file=sys.stderr)
        return 1

    return 0


def _apply_overrides(config: Config, args: argparse.Namespace) -> None:
    """Apply command-line overrides to the loaded configuration."""
    # Override SSH key if provided (applies to all machines)
    if args.key:
        key_path = args.key.expanduser()
        config.defaults.ssh_key = key_path
        for machine in config.machines:
            machine.ssh_key = key_path
    if args.known_hosts:
        config.defaults.known_hosts = args.known_hosts.expanduser()
    if args.auto_add:
        config.defaults.auto_add_hosts = True
    if args.timeout:
        config.defaults.timeout = args.timeout


def _run_headless(operator: Operator, command: str, targets) -> list[Result]:
    """Run on the fleet and print coloured per-machine lines."""
    names = targets or operator.names
    machine_colors = {name: COLORS[i % len(COLORS)] for i, name in enumerate(names)}

    def tag(name: str) -> str:
        return f"{machine_colors.get(name, '')}[{name}]{RESET}"

    def on_status(name: str, state: MachineState) -> None:
        if state is not MachineState.CLOSED:
            print(f"{tag(name)} Status: {state.value}")

    results = asyncio.run(operator.run(command, targets, on_status=on_status))

    print()
    for result in results:
        for line in result.output.splitlines():
            print(f"{tag(result.machine)} {line}")
        if result.success:
            print(f"{tag(result.machine)} OK ({result.elapsed:.2f}s)")
        else:
            print(f"{tag(result.machine)} ERROR: {result.error}")

    return results


if __name__ == "__main__":
    sys.exit(main())
