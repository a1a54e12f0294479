"""CLI handlers for provisioning commands (run, status, reset, validate).

Usage:
    fedprov run [--manifest PATH] [--state PATH] [--dry-run] [--force]
                [--continue-on-failure] [--yes] [--json-output] [--verbose]
    fedprov status [--state PATH] [--json-output]
    fedprov reset [--state PATH] [--yes]
    fedprov validate [--manifest PATH] [--json-output]

Exit codes:
    0  success
    1  one or more actions failed, the run was aborted, or sudo
       authentication failed
    2  invalid manifest, plan, config or state file
    3  state lock held by another run (or stale lock not confirmed)
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from backends import AdapterSet, validate_backends
from common import SudoKeepalive, is_root, sudo_validate
from config import ConfigError, ProvisionConfig, load_config
from manifest import load_manifest
from provision.errors import PlanError
from provision.executor import Executor, RunOptions
from provision.lock import StaleLock, StateLock, StateLocked, lock_path_for
from provision.plan import Plan
from provision.report import RunReport
from provision.state import StateError, StateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_LOCKED = 3

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all commands."""
    parser = argparse.ArgumentParser(prog=f'fedprov {verb}', description=description)
    parser.add_argument(
        '--config',
        type=Path,
        help='Settings file (default: $FEDPROV_CONFIG or ~/.config/fedprov/config.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    return parser


def _add_manifest_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--manifest', '-M',
        type=Path,
        help='Path to manifest file (default: bundled fedora-workstation manifest)',
    )


def _add_state_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--state',
        type=Path,
        help='Path to state file (default: ~/.local/state/fedprov/state.json)',
    )


def _add_json_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )


def _add_yes_arg(parser: argparse.ArgumentParser, help_text: str) -> None:
    parser.add_argument('--yes', '-y', action='store_true', help=help_text)


def _setup_logging(verbose: bool, json_output: bool, log_file: Optional[Path] = None) -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    if json_output:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root_logger.addHandler(stderr_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root_logger.addHandler(file_handler)

    if verbose:
        root_logger.setLevel(logging.DEBUG)


def _load_config(args) -> ProvisionConfig:
    """Load settings and apply CLI overrides.

    Raises:
        ConfigError: If the settings file is invalid
    """
    config = load_config(args.config)
    if getattr(args, 'manifest', None):
        config.manifest = args.manifest.expanduser()
    if getattr(args, 'state', None):
        config.state_path = args.state.expanduser()
    return config


def _error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def _confirm(prompt: str, assume_yes: bool) -> bool:
    """Ask for confirmation. Non-interactive sessions refuse unless assume_yes."""
    if assume_yes:
        return True
    if not sys.stdin.isatty():
        return False
    response = input(f"{prompt} [y/N] ").strip().lower()
    return response == 'y'


def _acquire_lock(lock: StateLock, assume_yes: bool) -> Optional[int]:
    """Acquire the state lock.

    Returns:
        None if the lock is held, exit code otherwise.
    """
    try:
        lock.acquire()
        return None
    except StateLocked as e:
        _error(f"{e}. Another fedprov run is in progress.")
        return EXIT_LOCKED
    except StaleLock as e:
        print(f"\nWARNING: {e}.", file=sys.stderr)
        print("This usually means a previous run crashed or was killed.", file=sys.stderr)
        if not _confirm("Remove the stale lock and continue?", assume_yes):
            _error(f"Stale lock not removed: {lock.path}. Rerun with --yes to break it.")
            return EXIT_LOCKED

    try:
        lock.break_stale()
        lock.acquire()
    except (StateLocked, StaleLock) as e:
        _error(str(e))
        return EXIT_LOCKED
    return None


def _build_plan(config: ProvisionConfig):
    """Load manifest and build a validated plan.

    Raises:
        ConfigError: Manifest missing or malformed
        PlanError: Invalid actions, dependencies or backends
    """
    manifest = load_manifest(config.manifest)
    plan = Plan.build(manifest.actions)
    validate_backends(plan)
    return manifest, plan


def _print_preview(manifest, plan: Plan, options: RunOptions) -> None:
    """Print the plan before a dry run."""
    print()
    print("═══════════════════════════════════════════════════════════════")
    print(f"  DRY-RUN: {manifest.name}")
    if manifest.source_path:
        print(f"  Manifest: {manifest.source_path}")
    print(f"  Actions: {len(plan)}{'  (force)' if options.force else ''}")
    print("═══════════════════════════════════════════════════════════════")
    for i, action in enumerate(plan, 1):
        deps = f"  (after {', '.join(sorted(action.depends_on))})" if action.depends_on else ''
        print(f"  {i:3}. {action.id}{deps}")


def run_main(argv: list) -> int:
    """Handle 'run' command."""
    parser = _common_parser('run', 'Provision this host from a manifest')
    _add_manifest_arg(parser)
    _add_state_arg(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Probe and report what would change without applying anything',
    )
    parser.add_argument(
        '--force',
        action='store_true',
        help='Ignore recorded progress and probes; apply every action',
    )
    parser.add_argument(
        '--continue-on-failure',
        action='store_true',
        help='Keep running actions that do not depend on a failed one',
    )
    _add_yes_arg(parser, 'Break a stale lock without asking')
    _add_json_arg(parser)
    args = parser.parse_args(argv)

    try:
        config = _load_config(args)
    except ConfigError as e:
        _error(str(e))
        return EXIT_INVALID
    _setup_logging(args.verbose, args.json_output, config.log_file)

    try:
        manifest, plan = _build_plan(config)
    except (ConfigError, PlanError) as e:
        _error(str(e))
        return EXIT_INVALID

    options = RunOptions(
        continue_on_failure=args.continue_on_failure or manifest.settings.continue_on_failure,
        dry_run=args.dry_run,
        force=args.force,
    )
    store = StateStore(config.state_path)
    executor = Executor(adapters=AdapterSet.from_config(config), manifest_name=manifest.name)

    if options.dry_run and not args.json_output:
        _print_preview(manifest, plan, options)

    logger.info(f"Provisioning from manifest '{manifest.name}' ({len(plan)} actions)")

    # A dry run never writes the store and never escalates
    lock = None
    keepalive = None
    if not options.dry_run:
        if config.use_sudo and not is_root():
            if not sudo_validate():
                _error("sudo authentication failed; privileged actions cannot run")
                return EXIT_FAILED
            keepalive = SudoKeepalive()
            keepalive.start()

        lock = StateLock(lock_path_for(config.state_path))
        lock_rc = _acquire_lock(lock, args.yes)
        if lock_rc is not None:
            if keepalive is not None:
                keepalive.stop()
            return lock_rc

    try:
        report = executor.run(plan, store, options, lock=lock)
    except StateError as e:
        _error(str(e))
        return EXIT_INVALID
    finally:
        if keepalive is not None:
            keepalive.stop()
        if lock is not None:
            lock.release()

    if args.json_output:
        output = {'command': 'run', 'manifest': manifest.name, **report.to_dict()}
        print(json.dumps(output, indent=2))
    else:
        print(report.format_text())

    return EXIT_OK if report.success else EXIT_FAILED


def status_main(argv: list) -> int:
    """Handle 'status' command."""
    parser = _common_parser('status', 'Show the outcome of the last run')
    _add_state_arg(parser)
    _add_json_arg(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        store = StateStore(config.state_path)
        report = RunReport.from_store(store)
        last_run = store.last_run()
    except (ConfigError, StateError) as e:
        _error(str(e))
        return EXIT_INVALID

    if report is None:
        if args.json_output:
            print(json.dumps({'command': 'status', 'state': str(config.state_path),
                              'last_run': None}, indent=2))
        else:
            print(f"No previous run recorded in {config.state_path}")
        return EXIT_OK

    if args.json_output:
        output = {
            'command': 'status',
            'state': str(config.state_path),
            'manifest': last_run.get('manifest'),
            'finished': last_run.get('finished_at') is not None,
            **report.to_dict(),
        }
        print(json.dumps(output, indent=2))
        return EXIT_OK

    if last_run.get('manifest'):
        print(f"Manifest: {last_run['manifest']}")
    print(f"State: {config.state_path}")
    if last_run.get('finished_at') is None:
        print("Last run did not finish (crashed or still running)")
    print(report.format_text())
    return EXIT_OK


def reset_main(argv: list) -> int:
    """Handle 'reset' command."""
    parser = _common_parser('reset', 'Forget all recorded progress')
    _add_state_arg(parser)
    _add_yes_arg(parser, 'Skip confirmation prompt')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, False)

    try:
        config = _load_config(args)
    except ConfigError as e:
        _error(str(e))
        return EXIT_INVALID

    store = StateStore(config.state_path)
    if not store.path.exists():
        print(f"Nothing to reset: {store.path} does not exist")
        return EXIT_OK

    if not args.yes:
        print(f"\nWARNING: This will forget all recorded progress in {store.path}.")
        print("The next run will probe every action again.")
        if not _confirm("Continue?", False):
            print("Aborted.")
            return EXIT_FAILED

    lock = StateLock(lock_path_for(config.state_path))
    lock_rc = _acquire_lock(lock, args.yes)
    if lock_rc is not None:
        return lock_rc
    try:
        store.clear()
    finally:
        lock.release()

    print(f"State reset: {store.path}")
    return EXIT_OK


def validate_main(argv: list) -> int:
    """Handle 'validate' command.

    Loads the manifest and builds the plan without touching the host or
    the state store: schema, kinds, dependencies, cycles and backends.
    """
    parser = _common_parser('validate', 'Validate manifest structure and dependencies')
    _add_manifest_arg(parser)
    _add_json_arg(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        manifest, plan = _build_plan(config)
    except (ConfigError, PlanError) as e:
        if args.json_output:
            print(json.dumps({'valid': False, 'error': str(e),
                              'error_type': type(e).__name__}, indent=2))
        else:
            _error(str(e))
        return EXIT_INVALID

    for i, action in enumerate(plan, 1):
        logger.debug(f"{i:3}. {action.id}")

    if args.json_output:
        print(json.dumps({
            'valid': True,
            'manifest': manifest.name,
            'actions': plan.ids,
        }, indent=2))
    else:
        count = len(plan)
        print(f"Manifest '{manifest.name}' is valid ({count} action{'s' if count != 1 else ''})")
    return EXIT_OK
