"""Execution targets and host-list rendering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union

from .errors import ConfigurationError

_SEPARATORS = re.compile(r"[,\s]+")


class ExecutionMode(Enum):
    """How child output is handled for a whole run."""

    COMPACT = "compact"
    VERBOSE = "verbose"
    TEST = "test"


@dataclass(frozen=True)
class LocalShell:
    """The machine fleetrun itself runs on."""

    @property
    def label(self) -> str:
        return "local"


@dataclass(frozen=True)
class RemoteHost:
    """A host reached over SSH."""

    address: str
    user: str | None = None
    port: int = 22

    @property
    def label(self) -> str:
        return f"{self.user}@{self.address}" if self.user else self.address


@dataclass(frozen=True)
class Container:
    """A running container reached through the container runtime."""

    id: str
    runtime: str = "docker"

    @property
    def label(self) -> str:
        return f"container:{self.id}"


Target = Union[LocalShell, RemoteHost, Container]


def normalize_hosts(raw: str | Iterable[str] | None) -> list[str]:
    """Split a host list with mixed comma/space separators into tokens.

    Order is kept and duplicates are not removed.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    hosts: list[str] = []
    for chunk in raw:
        hosts.extend(token for token in _SEPARATORS.split(str(chunk)) if token)
    return hosts


def parse_host(token: str, user: str | None = None, port: int = 22) -> RemoteHost:
    """Build a RemoteHost from ``host``, ``user@host`` or ``user@host:port``.

    An explicit user in the token wins over the default ``user``.
    """
    if "@" in token:
        user, token = token.rsplit("@", 1)
    if token.count(":") == 1:
        token, port_str = token.split(":")
        if not port_str.isdigit():
            raise ConfigurationError(f"Invalid port in host '{token}:{port_str}'")
        port = int(port_str)
    return RemoteHost(address=token, user=user or None, port=port)


def build_host_set(
    raw: str | Iterable[str] | None, user: str | None = None, port: int = 22
) -> list[RemoteHost]:
    """Normalize a raw host list and turn every token into a RemoteHost."""
    return [parse_host(token, user, port) for token in normalize_hosts(raw)]


def render_command(template: str, target: Target) -> str:
    """Substitute ``{host}``, ``{user}`` and ``{target}`` for one target.

    Any other braces in the template are left alone so shell snippets like
    ``${VAR}`` survive rendering.
    """
    if isinstance(target, RemoteHost):
        host, user = target.address, target.user or ""
    elif isinstance(target, Container):
        host, user = target.id, ""
    else:
        host, user = "localhost", ""
    return (
        template.replace("{host}", host)
        .replace("{user}", user)
        .replace("{target}", target.label)
    )
