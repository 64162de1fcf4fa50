"""Configuration loader for fleetrun.

Settings come from three layers, merged in order: built-in defaults, the YAML
project file, then runtime arguments. Every layer is a ``Settings`` with all
fields optional; a later layer wins wherever it sets a value.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError
from .targets import ExecutionMode, RemoteHost, build_host_set, normalize_hosts
from .transport import SSHOptions

DEFAULT_CONFIG_FILE = Path("fleetrun.yaml")


@dataclass
class Settings:
    """One configuration layer. ``None`` means "not set by this layer"."""

    hosts: list[str] | None = None
    user: str | None = None
    port: int | None = None
    ssh_key: Path | None = None
    known_hosts: str | None = None
    connect_timeout: float | None = None
    strategy: str | None = None
    mode: ExecutionMode | None = None
    log_path: Path | None = None
    container: str | None = None
    container_runtime: str | None = None
    work_dir: str | None = None
    commands: list[str] | None = None
    build_commands: list[str] | None = None
    watch_parent: bool | None = None
    parent_pid: int | None = None
    poll_interval: float | None = None


DEFAULTS = Settings(
    hosts=[],
    port=22,
    connect_timeout=10,
    strategy="run",
    mode=ExecutionMode.COMPACT,
    log_path=Path("logs/fleetrun.log"),
    container_runtime="docker",
    commands=[],
    build_commands=[],
    watch_parent=True,
    poll_interval=0.5,
)


@dataclass
class Config:
    """Resolved configuration for one run."""

    hosts: list[str] = field(default_factory=list)
    user: str | None = None
    port: int = 22
    ssh_key: Path | None = None
    known_hosts: str | None = None
    connect_timeout: float = 10
    strategy: str = "run"
    mode: ExecutionMode = ExecutionMode.COMPACT
    log_path: Path | None = None
    container: str | None = None
    container_runtime: str = "docker"
    work_dir: str | None = None
    commands: list[str] = field(default_factory=list)
    build_commands: list[str] = field(default_factory=list)
    watch_parent: bool = True
    parent_pid: int | None = None
    poll_interval: float = 0.5
    source_path: Path | None = None  # Path to the project file, if one was read

    def host_set(self) -> list[RemoteHost]:
        return build_host_set(self.hosts, self.user, self.port)

    def ssh_options(self) -> SSHOptions:
        return SSHOptions(
            connect_timeout=self.connect_timeout,
            client_keys=[self.ssh_key] if self.ssh_key else [],
            known_hosts=self.known_hosts,
        )


def merge_settings(*layers: Settings) -> Config:
    """Merge layers left to right into a Config. Later layers win."""
    merged = Settings()
    for layer in layers:
        updates = {
            f.name: getattr(layer, f.name)
            for f in fields(Settings)
            if getattr(layer, f.name) is not None
        }
        merged = replace(merged, **updates)

    values = {f.name: getattr(merged, f.name) for f in fields(Settings)}
    config = Config(**{k: v for k, v in values.items() if v is not None})
    _validate(config)
    return config


def _validate(config: Config) -> None:
    if not 0 < config.poll_interval < 1:
        raise ConfigurationError(
            f"poll_interval must be between 0 and 1 second, got {config.poll_interval}"
        )
    if config.connect_timeout <= 0:
        raise ConfigurationError(
            f"connect_timeout must be positive, got {config.connect_timeout}"
        )


def load_settings(config_path: str | Path) -> Settings:
    """Load one settings layer from a YAML project file."""
    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if raw is None:
        return Settings()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at the top level")
    return _parse_settings(raw)


def load_config(
    config_path: str | Path | None = None, overrides: Settings | None = None
) -> Config:
    """Resolve defaults, the project file and runtime overrides into a Config.

    Without an explicit path, ``fleetrun.yaml`` in the working directory is
    read when it exists.
    """
    source_path = None
    file_layer = Settings()
    if config_path is not None:
        file_layer = load_settings(config_path)
        source_path = Path(config_path).resolve()
    elif DEFAULT_CONFIG_FILE.exists():
        file_layer = load_settings(DEFAULT_CONFIG_FILE)
        source_path = DEFAULT_CONFIG_FILE.resolve()

    config = merge_settings(DEFAULTS, file_layer, overrides or Settings())
    config.source_path = source_path
    return config


def parse_mode(value: str | ExecutionMode) -> ExecutionMode:
    if isinstance(value, ExecutionMode):
        return value
    try:
        return ExecutionMode(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in ExecutionMode)
        raise ConfigurationError(f"Unknown mode '{value}' (expected one of: {choices})") from None


def _parse_settings(raw: dict[str, Any]) -> Settings:
    """Parse raw YAML data into a Settings layer."""
    known = {f.name for f in fields(Settings)} | {"command_groups"}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

    # Parse command groups
    groups_raw = raw.get("command_groups") or {}
    if not isinstance(groups_raw, dict):
        raise ConfigurationError("'command_groups' must be a mapping of names to command lists")
    command_groups = {
        str(name): _string_list(raw, "command_groups", cmds)
        for name, cmds in groups_raw.items()
    }

    settings = Settings(
        user=_scalar(raw, "user", str),
        port=_scalar(raw, "port", int),
        known_hosts=_scalar(raw, "known_hosts", str),
        connect_timeout=_scalar(raw, "connect_timeout", float),
        strategy=_scalar(raw, "strategy", str),
        container=_scalar(raw, "container", str),
        container_runtime=_scalar(raw, "container_runtime", str),
        work_dir=_scalar(raw, "work_dir", str),
        watch_parent=_scalar(raw, "watch_parent", bool),
        parent_pid=_scalar(raw, "parent_pid", int),
        poll_interval=_scalar(raw, "poll_interval", float),
    )

    if "hosts" in raw:
        settings.hosts = normalize_hosts(_string_list(raw, "hosts", raw["hosts"]))
    if raw.get("ssh_key") is not None:
        settings.ssh_key = Path(_scalar(raw, "ssh_key", str)).expanduser()
    if raw.get("log_path") is not None:
        settings.log_path = Path(_scalar(raw, "log_path", str)).expanduser()
    if raw.get("mode") is not None:
        settings.mode = parse_mode(_scalar(raw, "mode", str))
    if "commands" in raw:
        settings.commands = _resolve_commands(
            _string_list(raw, "commands", raw["commands"]), command_groups
        )
    if "build_commands" in raw:
        settings.build_commands = _resolve_commands(
            _string_list(raw, "build_commands", raw["build_commands"]), command_groups
        )

    return settings


_TYPE_NAMES = {str: "a string", int: "an integer", float: "a number", bool: "true or false"}


def _scalar(raw: dict[str, Any], key: str, kind: type) -> Any:
    """Read ``raw[key]`` as ``kind``; missing or null stays None."""
    value = raw.get(key)
    if value is None:
        return None
    if kind is bool:
        if isinstance(value, bool):
            return value
    elif isinstance(value, (str, int, float)) and not isinstance(value, bool):
        try:
            return kind(value)
        except ValueError:
            pass
    raise ConfigurationError(f"'{key}' must be {_TYPE_NAMES[kind]}, got {value!r}")


def _string_list(raw: dict[str, Any], key: str, value: Any) -> list[str]:
    """Accept a single string or a list of strings. Null means empty."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return value
    raise ConfigurationError(f"'{key}' must be a string or a list of strings, got {value!r}")


def _resolve_commands(
    commands_raw: str | list[str], command_groups: dict[str, list[str]]
) -> list[str]:
    """Resolve command group references to actual commands."""
    if isinstance(commands_raw, str):
        commands_raw = [commands_raw]

    commands = []
    for cmd in commands_raw:
        if cmd in command_groups:
            # It's a group reference, expand it
            commands.extend(command_groups[cmd])
        else:
            # It's a direct command
            commands.append(cmd)

    return commands
