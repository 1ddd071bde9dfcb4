"""
Command-line interface for ShellGlance.

Provides CLI commands for:
- Watching commands on their schedules (condensed label on every change)
- Refreshing all commands once and printing the detailed breakdown
- Adding/removing/editing/enabling/disabling commands
- Managing display options

Edits are written to the settings file; a running ``watch`` picks them up
and reschedules without a restart.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from shellglance.config import DEFAULT_INTERVAL, DEFAULT_TIMEOUT, CommandConfig
from shellglance.coordinator import ScheduleCoordinator
from shellglance.executor import CommandExecutor
from shellglance.render import format_details, render_details, render_label
from shellglance.settings import DEFAULTS, MAX_LENGTH_RANGE, JsonSettingsStore

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 2.0


def get_log_dir() -> Path:
    """Get the log directory from environment or default."""
    if os.environ.get('SHELLGLANCE_LOG_DIR'):
        return Path(os.environ['SHELLGLANCE_LOG_DIR']).expanduser()
    return Path.home() / ".shellglance" / "logs"


def get_log_file() -> Path:
    """Get the watch log file path."""
    return get_log_dir() / "shellglance.log"


def setup_logging(log_file: str = None, verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # APScheduler logs every job run at INFO
    logging.getLogger('apscheduler').setLevel(logging.DEBUG if verbose else logging.WARNING)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)


def _label_line(coordinator: ScheduleCoordinator, store) -> str:
    label, has_error = render_label(
        coordinator,
        separator=store.get_string('separator'),
        max_length=store.get_int('max-length'),
    )
    marker = "!" if has_error else " "
    return f"{marker} {label}"


async def _watch(args, stop_event: asyncio.Event = None) -> int:
    """
    Run the coordinator until stop_event is set (SIGINT/SIGTERM set it too).

    Polls the settings file every ``args.poll`` seconds so edits made with
    the other subcommands are applied while running.
    """
    store = JsonSettingsStore(args.settings)
    coordinator = ScheduleCoordinator(store, allow_overlap=args.allow_overlap)

    if stop_event is None:
        stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handled_signals = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
            handled_signals.append(signum)
        except (NotImplementedError, RuntimeError):
            pass

    last_line = None

    def print_label():
        nonlocal last_line
        line = _label_line(coordinator, store)
        if line != last_line:
            print(line, flush=True)
            last_line = line

    coordinator.subscribe(print_label)
    coordinator.start_all()
    print_label()

    logger.info(f"Watching {len(coordinator.get_enabled_commands())} command(s). Press Ctrl+C to stop.")

    try:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), args.poll)
            except asyncio.TimeoutError:
                store.check_for_changes()
    finally:
        logger.info("Shutting down...")
        coordinator.destroy()
        coordinator.cancel_runs()
        await coordinator.wait_idle()
        for signum in handled_signals:
            loop.remove_signal_handler(signum)

    return 0


def cmd_watch(args):
    """Run all enabled commands on their schedules until interrupted."""
    setup_logging(
        log_file=args.log_file or str(get_log_file()),
        verbose=args.verbose
    )

    try:
        sys.exit(asyncio.run(_watch(args)))
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        logger.error(f"Failed to watch commands: {e}", exc_info=True)
        sys.exit(1)


async def _status(args) -> int:
    store = JsonSettingsStore(args.settings)
    coordinator = ScheduleCoordinator(store)
    try:
        results = await coordinator.refresh_all()
        print(format_details(render_details(coordinator), color=args.color))
        print()
        print(_label_line(coordinator, store))
        return 0 if all(result.success for result in results) else 1
    finally:
        coordinator.destroy()


def cmd_status(args):
    """Run every enabled command once and show the results."""
    setup_logging(verbose=args.verbose)

    try:
        exit_code = asyncio.run(_status(args))
    except Exception as e:
        logger.error(f"Failed to refresh commands: {e}")
        sys.exit(1)
    sys.exit(exit_code)


def cmd_run_once(args):
    """Run a single command immediately."""
    setup_logging(verbose=args.verbose)

    executor = CommandExecutor()
    result = asyncio.run(executor.execute(args.command, args.timeout))

    if result.output:
        print(result.output)
    if result.error:
        print(result.error, file=sys.stderr)
    if not result.success:
        sys.exit(1)


def cmd_list(args):
    """List configured commands."""
    setup_logging(verbose=args.verbose)

    config = CommandConfig(JsonSettingsStore(args.settings))
    print(f"=== Configured Commands ({len(config.commands)}) ===\n")

    for spec in config.commands:
        status = "✓" if spec.enabled else "✗"
        print(f"{status} {spec.name or 'Unnamed'}")
        print(f"    ID: {spec.id}")
        print(f"    Command: {spec.command}")
        print(f"    Every {spec.interval}s, timeout {spec.timeout}s")
        print()


def _save_or_exit(config: CommandConfig):
    errors = config.validate()
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        sys.exit(1)
    config.save()


def cmd_add(args):
    """Add a new command."""
    setup_logging(verbose=args.verbose)

    try:
        config = CommandConfig(JsonSettingsStore(args.settings))
        spec = config.add_command(
            command=args.command,
            name=args.name,
            interval=args.interval,
            timeout=args.timeout,
            enabled=not args.disabled
        )
        _save_or_exit(config)

        logger.info(f"Added command '{spec.label}' (id: {spec.id})")
        logger.info(f"Command: {spec.command}")

    except ValueError as e:
        logger.error(f"Failed to add command: {e}")
        sys.exit(1)


def cmd_remove(args):
    """Remove a command."""
    setup_logging(verbose=args.verbose)

    config = CommandConfig(JsonSettingsStore(args.settings))
    if config.remove_command(args.id):
        config.save()
        logger.info(f"Removed command '{args.id}'")
    else:
        logger.error(f"Command '{args.id}' not found")
        sys.exit(1)


def cmd_enable(args):
    """Enable a command."""
    setup_logging(verbose=args.verbose)

    try:
        config = CommandConfig(JsonSettingsStore(args.settings))
        spec = config.enable_command(args.id)
        config.save()
        logger.info(f"Enabled command '{spec.label}'")
    except ValueError as e:
        logger.error(f"Failed to enable command: {e}")
        sys.exit(1)


def cmd_disable(args):
    """Disable a command."""
    setup_logging(verbose=args.verbose)

    try:
        config = CommandConfig(JsonSettingsStore(args.settings))
        spec = config.disable_command(args.id)
        config.save()
        logger.info(f"Disabled command '{spec.label}'")
    except ValueError as e:
        logger.error(f"Failed to disable command: {e}")
        sys.exit(1)


def cmd_edit(args):
    """Change fields of a command."""
    setup_logging(verbose=args.verbose)

    changes = {
        key: value
        for key, value in (
            ('name', args.name),
            ('command', args.command),
            ('interval', args.interval),
            ('timeout', args.timeout),
        )
        if value is not None
    }
    if not changes:
        logger.error("Nothing to change: pass --name, --command, --interval or --timeout")
        sys.exit(1)

    try:
        config = CommandConfig(JsonSettingsStore(args.settings))
        spec = config.update_command(args.id, **changes)
        _save_or_exit(config)
        logger.info(f"Updated command '{spec.label}': {', '.join(sorted(changes))}")
    except ValueError as e:
        logger.error(f"Failed to edit command: {e}")
        sys.exit(1)


def cmd_init(args):
    """Initialize the settings file."""
    setup_logging(verbose=args.verbose)

    store = JsonSettingsStore(args.settings)
    if store.path.exists() and not args.force:
        logger.warning(f"Settings already exist at {store.path} (use --force to overwrite)")
        return

    store.save()
    config = CommandConfig(store)
    config.commands = []
    config.add_command(command='echo "Hello, World!"', name="New Command")
    config.save()

    logger.info(f"Initialized settings at: {store.path}")
    logger.info("Default command created: New Command")

    log_dir = get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Created log directory: {log_dir}")


def cmd_show_config(args):
    """Show current configuration."""
    setup_logging(verbose=args.verbose)

    store = JsonSettingsStore(args.settings)
    config = CommandConfig(store)

    print(f"\nSettings file: {store.path}")
    print(f"\nCommands: {len(config.commands)} ({len(config.get_enabled_commands())} enabled)")
    print(f"Separator: {store.get_string('separator')!r}")
    print(f"Max length: {store.get_int('max-length')}")
    print(f"Log file: {get_log_file()}")


def cmd_set_option(args):
    """Change display options."""
    setup_logging(verbose=args.verbose)

    if args.separator is None and args.max_length is None:
        logger.error("Nothing to change: pass --separator or --max-length")
        sys.exit(1)

    store = JsonSettingsStore(args.settings)

    if args.max_length is not None:
        low, high = MAX_LENGTH_RANGE
        if not low <= args.max_length <= high:
            logger.error(f"--max-length must be between {low} and {high}")
            sys.exit(1)
        store.set_int('max-length', args.max_length)
        logger.info(f"Max length set to {args.max_length}")

    if args.separator is not None:
        store.set_string('separator', args.separator)
        logger.info(f"Separator set to {args.separator!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shellglance",
        description="ShellGlance - Run shell commands on intervals and glance at their latest output",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-s', '--settings',
        type=str,
        help='Path to settings file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='subcommand', help='Commands')

    # Watch command
    watch_parser = subparsers.add_parser('watch', help='Run commands on their schedules')
    watch_parser.add_argument(
        '--poll',
        type=float,
        default=DEFAULT_POLL_SECONDS,
        help=f'Seconds between settings file checks (default: {DEFAULT_POLL_SECONDS})'
    )
    watch_parser.add_argument(
        '--allow-overlap',
        action='store_true',
        help='Start a new run on every tick even if the previous one is still running'
    )
    watch_parser.add_argument(
        '--log-file',
        type=str,
        help='Log file path'
    )
    watch_parser.set_defaults(func=cmd_watch)

    # Status command
    status_parser = subparsers.add_parser('status', help='Run all enabled commands once and show results')
    status_parser.add_argument('--color', action='store_true', help='Colorize output')
    status_parser.set_defaults(func=cmd_status)

    # Run-once command
    run_once_parser = subparsers.add_parser('run-once', help='Run a single command immediately')
    run_once_parser.add_argument('--command', '-c', required=True, help='Shell command to execute')
    run_once_parser.add_argument('--timeout', type=int, default=DEFAULT_TIMEOUT,
                                 help=f'Command timeout in seconds (default: {DEFAULT_TIMEOUT})')
    run_once_parser.set_defaults(func=cmd_run_once)

    # List command
    list_parser = subparsers.add_parser('list', help='List configured commands')
    list_parser.set_defaults(func=cmd_list)

    # Add command
    add_parser = subparsers.add_parser('add', help='Add a new command')
    add_parser.add_argument('name', help='Display name')
    add_parser.add_argument(
        '--command', '-c',
        required=True,
        help='Shell command to execute (e.g., "uptime -p")'
    )
    add_parser.add_argument('--interval', type=int, default=DEFAULT_INTERVAL,
                            help=f'Seconds between runs (default: {DEFAULT_INTERVAL})')
    add_parser.add_argument('--timeout', type=int, default=DEFAULT_TIMEOUT,
                            help=f'Command timeout in seconds (default: {DEFAULT_TIMEOUT})')
    add_parser.add_argument('--disabled', action='store_true', help='Add the command disabled')
    add_parser.set_defaults(func=cmd_add)

    # Remove command
    remove_parser = subparsers.add_parser('remove', help='Remove a command')
    remove_parser.add_argument('id', help='Command id or name')
    remove_parser.set_defaults(func=cmd_remove)

    # Enable command
    enable_parser = subparsers.add_parser('enable', help='Enable a command')
    enable_parser.add_argument('id', help='Command id or name')
    enable_parser.set_defaults(func=cmd_enable)

    # Disable command
    disable_parser = subparsers.add_parser('disable', help='Disable a command')
    disable_parser.add_argument('id', help='Command id or name')
    disable_parser.set_defaults(func=cmd_disable)

    # Edit command
    edit_parser = subparsers.add_parser('edit', help='Change fields of a command')
    edit_parser.add_argument('id', help='Command id or name')
    edit_parser.add_argument('--name', type=str, help='New display name')
    edit_parser.add_argument('--command', '-c', type=str, help='New shell command')
    edit_parser.add_argument('--interval', type=int, help='New interval in seconds')
    edit_parser.add_argument('--timeout', type=int, help='New timeout in seconds')
    edit_parser.set_defaults(func=cmd_edit)

    # Init command
    init_parser = subparsers.add_parser('init', help='Initialize settings file')
    init_parser.add_argument('--force', action='store_true', help='Overwrite existing settings')
    init_parser.set_defaults(func=cmd_init)

    # Show config command
    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    # Set option command
    set_option_parser = subparsers.add_parser('set-option', help='Change display options')
    set_option_parser.add_argument('--separator', type=str, help='Text between command outputs')
    set_option_parser.add_argument('--max-length', type=int,
                                   help=f'Characters per command in the label (default: {DEFAULTS["max-length"]})')
    set_option_parser.set_defaults(func=cmd_set_option)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.subcommand:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
