#!/usr/bin/env python3
"""CLI entry point for fedprov.

Commands:
- run: Provision this host from a manifest
- status: Show the outcome of the last run
- reset: Forget recorded progress
- validate: Check a manifest without touching the host
"""

import logging
import subprocess
import sys
from pathlib import Path

COMMANDS = {
    "run": "Provision this host from a manifest",
    "status": "Show the outcome of the last run",
    "reset": "Forget all recorded progress",
    "validate": "Validate manifest structure and dependencies",
}


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing commands."""
    print(f"fedprov {get_version()}")
    print()
    print("Usage: fedprov <command> [options]")
    print()
    print("Commands:")
    for command, desc in COMMANDS.items():
        print(f"  {command:<12} {desc}")
    print()
    print("Run 'fedprov <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  fedprov validate")
    print("  fedprov run --dry-run")
    print("  fedprov run --manifest ~/workstation.yaml --continue-on-failure")
    print("  fedprov status --json-output")
    print("  fedprov reset --yes")


def dispatch(command: str, argv: list) -> int:
    """Dispatch to command-specific CLI handler.

    Args:
        command: The command (e.g., "run", "status")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from provision import cli as provision_cli

    handlers = {
        "run": provision_cli.run_main,
        "status": provision_cli.status_main,
        "reset": provision_cli.reset_main,
        "validate": provision_cli.validate_main,
    }
    rc: int = handlers[command](argv)
    return rc


def main(argv=None):
    """CLI entry point: dispatch to command handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(f"fedprov {get_version()}")
        return 0

    command = argv[0]
    if command not in COMMANDS:
        print(f"Error: Unknown command '{command}'", file=sys.stderr)
        print_usage()
        return 2

    return dispatch(command, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
