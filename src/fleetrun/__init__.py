"""fleetrun: Run deployment commands across SSH hosts with clean teardown."""

import logging

from .config import Config, Settings, load_config, merge_settings
from .errors import (
    CommandFailure,
    ConfigurationError,
    FleetrunError,
    HostUnreachable,
    InterruptedByOperator,
    OrphanedByParent,
)
from .executor import Executor, JobStatus
from .jobs import Batch, ExecResult, ExitOutcome, JobRecord, JobRegistry
from .targets import Container, ExecutionMode, LocalShell, RemoteHost, normalize_hosts
from .watchdog import StopReason, Supervisor

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Config",
    "Settings",
    "load_config",
    "merge_settings",
    "CommandFailure",
    "ConfigurationError",
    "FleetrunError",
    "HostUnreachable",
    "InterruptedByOperator",
    "OrphanedByParent",
    "Executor",
    "JobStatus",
    "Batch",
    "ExecResult",
    "ExitOutcome",
    "JobRecord",
    "JobRegistry",
    "Container",
    "ExecutionMode",
    "LocalShell",
    "RemoteHost",
    "normalize_hosts",
    "StopReason",
    "Supervisor",
]
