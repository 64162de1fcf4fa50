#!/usr/bin/env python3
"""Main entry point for fleetrun."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .check import check_config, render_report
from .config import Config, Settings, load_config
from .errors import CommandFailure, ConfigurationError, InterruptedByOperator, OrphanedByParent
from .executor import Executor, JobStatus
from .jobs import JobRegistry
from .logsink import close_logging, setup_logging
from .strategies import Strategy, get_strategy
from .targets import ExecutionMode, normalize_hosts
from .watchdog import Supervisor

logger = logging.getLogger(__name__)

# ANSI colors for different targets
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
        description="Run deployment commands across SSH hosts, locally or in a build container"
    )
    parser.add_argument(
        "config",
        type=Path,
        nargs="?",
        help="Path to YAML project file (default: ./fleetrun.yaml if present)",
    )
    parser.add_argument("--hosts", help="Hosts to run on, comma or space separated")
    parser.add_argument("--user", help="SSH user for hosts without an explicit user@")
    parser.add_argument("--strategy", help="Deployment strategy: run, exec, build or deploy")
    parser.add_argument(
        "-c",
        "--command",
        action="append",
        dest="commands",
        help="Command to run (repeatable, replaces configured commands)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-v", "--verbose", action="store_true", help="Stream command output live")
    mode.add_argument(
        "-t",
        "--test",
        action="store_true",
        help="Dry run: log the commands without running them",
    )
    parser.add_argument("--log", type=Path, help="Append the run log to this file")
    parser.add_argument("--no-log", action="store_true", help="Disable the log file")
    parser.add_argument("--key", type=Path, help="Override SSH key path from config")
    parser.add_argument("--timeout", type=float, help="SSH connection timeout in seconds")
    parser.add_argument("--container", help="Container id for the build strategy")
    parser.add_argument("--work-dir", help="Directory to run remote commands in")
    parser.add_argument(
        "--no-watchdog",
        action="store_true",
        help="Do not kill the job tree when the parent process exits",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Print the resolved configuration and its problems, then exit",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    """The runtime-arguments configuration layer."""
    mode = None
    if args.verbose:
        mode = ExecutionMode.VERBOSE
    elif args.test:
        mode = ExecutionMode.TEST

    return Settings(
        hosts=normalize_hosts(args.hosts) if args.hosts is not None else None,
        user=args.user,
        strategy=args.strategy,
        commands=args.commands,
        mode=mode,
        log_path=args.log,
        ssh_key=args.key.expanduser() if args.key else None,
        connect_timeout=args.timeout,
        container=args.container,
        work_dir=args.work_dir,
        watch_parent=False if args.no_watchdog else None,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config, settings_from_args(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.no_log:
        config.log_path = None

    if args.check:
        print(render_report(config))
        return 1 if check_config(config) else 0

    try:
        strategy = get_strategy(config.strategy)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if config.ssh_key and not config.ssh_key.exists():
        print(f"Error: SSH key not found: {config.ssh_key}", file=sys.stderr)
        return 1

    handler = setup_logging(config.log_path, verbose=config.mode is ExecutionMode.VERBOSE)
    try:
        if args.dashboard:
            return _run_dashboard(config, strategy)
        return _run_headless(config, strategy)
    finally:
        close_logging(handler)


def _run_dashboard(config: Config, strategy: Strategy) -> int:
    """Run the strategy behind the TUI dashboard."""
    from .dashboard import Dashboard

    app = Dashboard(config, strategy)
    app.run()

    if app.error is not None:
        return _report_error(app.error)
    return 0


def _run_headless(config: Config, strategy: Strategy) -> int:
    """Run the strategy printing prefixed output to the terminal."""
    target_colors: dict[str, str] = {}

    def color_for(label: str) -> str:
        if label not in target_colors:
            target_colors[label] = COLORS[len(target_colors) % len(COLORS)]
        return target_colors[label]

    def on_output(label: str, line: str) -> None:
        print(f"{color_for(label)}[{label}]{RESET} {line}")

    def on_status(label: str, status: JobStatus) -> None:
        if config.mode is ExecutionMode.VERBOSE or status is JobStatus.FAILED:
            print(f"{color_for(label)}[{label}]{RESET} Status: {status.value}")

    registry = JobRegistry()
    executor = Executor(config, registry, on_output=on_output, on_status=on_status)
    supervisor = Supervisor(
        registry,
        parent_pid=config.parent_pid,
        poll_interval=config.poll_interval,
        watch_parent=config.watch_parent,
    )

    logger.info("Starting strategy '%s' (%s mode)", config.strategy, config.mode.value)
    try:
        asyncio.run(supervisor.run(strategy(executor, config)))
    except (CommandFailure, ConfigurationError, InterruptedByOperator, OrphanedByParent) as e:
        return _report_error(e)

    logger.info("Strategy '%s' completed", config.strategy)
    return 0


def _report_error(error: Exception) -> int:
    """Print a run-ending error and map it to the exit status."""
    if isinstance(error, InterruptedByOperator):
        logger.info("Stopped by operator")
        print("Stopped.", file=sys.stderr)
        return 0
    if isinstance(error, CommandFailure) and error.output:
        print(error.output, file=sys.stderr)
    logger.error("%s", error)
    print(f"Error: {error}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
