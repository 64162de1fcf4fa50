"""Error types raised by the execution engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .jobs import ExitOutcome


class FleetrunError(Exception):
    """Base class for all fleetrun errors."""


class ConfigurationError(FleetrunError):
    """Invalid or missing input. Fatal, never retried."""


class CommandFailure(FleetrunError):
    """A command exited with a non-zero status on its target."""

    def __init__(self, outcome: ExitOutcome, output: str = "") -> None:
        self.outcome = outcome
        self.output = output
        super().__init__(
            f"Command failed on {outcome.target.label} "
            f"(exit status {outcome.status}): {outcome.command}"
        )

    @property
    def status(self) -> int:
        return self.outcome.status


class HostUnreachable(CommandFailure):
    """The transport could not reach the target within its timeout."""


class InterruptedByOperator(FleetrunError):
    """A termination signal stopped the run. Not a failure."""


class OrphanedByParent(FleetrunError):
    """The supervising parent process disappeared."""
