#!/usr/bin/env python3
"""Command-line interface for the session audit daemon.

Usage:
    session-audit run [options]    # Run the daemon in the foreground
    session-audit status           # Report whether the daemon is running
    session-audit stop             # Ask a running daemon to shut down

Examples:
    # Deliver through the messaging CLI only
    session-audit run --send-method fallback --channel discord --target 1234

    # Webhook with CLI fallback, verbose logging
    session-audit -v run --webhook-url https://example.com/hook \\
        --channel discord --target 1234

    # Replay existing history (debugging)
    session-audit -vv run --process-all --config ./config.json
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import SEND_METHODS, AuditConfig, ConfigError
from .realtime.state import PidFile
from .realtime.watcher import AuditContext, AuditDaemon

logger = logging.getLogger(__name__)


EXIT_ALREADY_RUNNING = 1
EXIT_NOT_RUNNING = 1
EXIT_CONFIG_ERROR = 2


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="session-audit",
        description="Stream agent session activity to a chat channel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  session-audit run --channel discord --target 1234     Run with CLI fallback
  session-audit run --webhook-url URL --send-method webhook
  session-audit status                                  Check the daemon
  session-audit stop                                    Stop the daemon
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for info, -vv for debug)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        metavar="FILE",
        help="JSON config file",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        metavar="DIR",
        help="Directory for state.json, daemon.pid and events.jsonl",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser(
        "run",
        help="Run the audit daemon in the foreground",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_run_arguments(run_parser)

    subparsers.add_parser("status", help="Report whether the daemon is running")
    subparsers.add_parser("stop", help="Send SIGTERM to a running daemon")

    return parser


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    """Add arguments for the run subcommand."""
    source_group = parser.add_argument_group("sources")
    source_group.add_argument(
        "--agents-dir",
        type=Path,
        metavar="DIR",
        help="Directory containing <agent>/sessions/ (default: ~/.openclaw/agents)",
    )
    source_group.add_argument(
        "--process-all",
        action="store_true",
        default=None,
        help="Process existing history of newly seen files instead of skipping it",
    )

    delivery_group = parser.add_argument_group("delivery")
    delivery_group.add_argument(
        "--send-method",
        choices=SEND_METHODS,
        help="Delivery transport (default: auto)",
    )
    delivery_group.add_argument(
        "--webhook-url",
        metavar="URL",
        help="Webhook endpoint for primary delivery",
    )
    delivery_group.add_argument(
        "--channel",
        metavar="NAME",
        help="Channel passed to the messaging CLI",
    )
    delivery_group.add_argument(
        "--target",
        metavar="ID",
        help="Target identifier passed to the messaging CLI",
    )
    delivery_group.add_argument(
        "--rate-limit-ms",
        type=int,
        metavar="MS",
        help="Minimum spacing between messages (default: 2000)",
    )
    delivery_group.add_argument(
        "--batch-window-ms",
        type=int,
        metavar="MS",
        help="Inactivity window before a batch is sent (default: 10000)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Verbose tracing (same as -vv)",
    )


def setup_logging(verbosity: int) -> None:
    """Configure root logging from the -v count."""
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_config(args: argparse.Namespace) -> AuditConfig:
    """Build the configuration from file, environment and flags.

    Raises:
        ConfigError: If the config file cannot be read
    """
    config = AuditConfig.load(args.config)
    config.apply_overrides(state_dir=args.state_dir)
    if getattr(args, "command", None) == "run":
        config.apply_overrides(
            agents_dir=args.agents_dir,
            debug_process_all=args.process_all,
            send_method=args.send_method,
            webhook_url=args.webhook_url,
            channel=args.channel,
            target_id=args.target,
            rate_limit_ms=args.rate_limit_ms,
            batch_window_ms=args.batch_window_ms,
            debug=args.debug,
        )
    return config


def cmd_run(args: argparse.Namespace) -> int:
    """Execute the run subcommand.

    Args:
        args: Parsed CLI arguments

    Returns:
        Exit code (0 for success)
    """
    try:
        config = load_config(args)
        config.validate()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    pid_file = PidFile(config.pid_file)
    if not pid_file.acquire():
        print(
            f"Error: session-audit is already running (pid {pid_file.read()})",
            file=sys.stderr,
        )
        return EXIT_ALREADY_RUNNING

    try:
        daemon = AuditDaemon(AuditContext.build(config))
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass
    finally:
        pid_file.release()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Execute the status subcommand."""
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    pid = PidFile(config.pid_file).running_pid()
    if pid is None:
        print("session-audit is not running")
        return EXIT_NOT_RUNNING
    print(f"session-audit is running (pid {pid})")
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    """Execute the stop subcommand."""
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    pid = PidFile(config.pid_file).running_pid()
    if pid is None:
        print("session-audit is not running")
        return EXIT_NOT_RUNNING

    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as e:
        print(f"Error: cannot signal pid {pid}: {e}", file=sys.stderr)
        return 1
    print(f"Sent SIGTERM to session-audit (pid {pid})")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "status":
        return cmd_status(args)
    elif args.command == "stop":
        return cmd_stop(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
