"""Report on a resolved configuration."""

from __future__ import annotations

from .config import Config
from .errors import ConfigurationError
from .strategies import STRATEGIES


def check_config(config: Config) -> list[str]:
    """Return the problems that would stop ``config`` from running."""
    problems = []

    if config.strategy not in STRATEGIES:
        problems.append(
            f"unknown strategy '{config.strategy}' "
            f"(available: {', '.join(sorted(STRATEGIES))})"
        )

    try:
        hosts = config.host_set()
    except ConfigurationError as e:
        problems.append(str(e))
        hosts = []

    if config.strategy in ("run", "deploy") and not hosts:
        problems.append(f"strategy '{config.strategy}' needs at least one host")
    if config.strategy == "exec" and len(hosts) > 1:
        problems.append(f"strategy 'exec' runs on one host, {len(hosts)} configured")
    if config.strategy == "build" and not config.container:
        problems.append("strategy 'build' needs a container")
    if config.strategy != "build" and not config.commands:
        problems.append("no commands configured")
    if config.ssh_key and not config.ssh_key.exists():
        problems.append(f"SSH key not found: {config.ssh_key}")

    return problems


def render_report(config: Config) -> str:
    """Plain text summary of ``config`` followed by its problems."""
    lines = [
        f"Config file:  {config.source_path or '(none)'}",
        f"Strategy:     {config.strategy}",
        f"Mode:         {config.mode.value}",
        f"Log file:     {config.log_path or '(disabled)'}",
        f"User:         {config.user or '(ssh default)'}",
        f"Timeout:      {config.connect_timeout}s",
        f"Container:    {config.container or '(none)'}",
        f"Work dir:     {config.work_dir or '(none)'}",
        f"Hosts ({len(config.hosts)}):",
    ]
    lines.extend(f"  - {host}" for host in config.hosts)
    if config.build_commands:
        lines.append(f"Build commands ({len(config.build_commands)}):")
        lines.extend(f"  $ {cmd}" for cmd in config.build_commands)
    lines.append(f"Commands ({len(config.commands)}):")
    lines.extend(f"  $ {cmd}" for cmd in config.commands)

    problems = check_config(config)
    if problems:
        lines.append("Problems:")
        lines.extend(f"  ! {problem}" for problem in problems)
    else:
        lines.append("OK")
    return "\n".join(lines)
