"""Job execution engine for fleetrun."""

from __future__ import annotations

import logging
import shlex
from enum import Enum
from typing import Callable, Iterable, Union

from .config import Config
from .errors import CommandFailure, ConfigurationError, HostUnreachable
from .jobs import Batch, ExecResult, ExitOutcome, JobRecord, JobRegistry, ProcessHandle
from .targets import (
    Container,
    ExecutionMode,
    LocalShell,
    RemoteHost,
    Target,
    normalize_hosts,
    parse_host,
    render_command,
)
from .transport import OutputCallback, spawn

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Status of a job on one target."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


StatusCallback = Callable[[str, JobStatus], None]  # (target_label, status) -> None

# What callers may pass where a target or host set is expected
Hosts = Union[str, Iterable[Union[str, Target]], None]


class Executor:
    """Runs commands on single targets and in parallel batches.

    Every started process is tracked in ``registry`` until it is reaped, so
    the supervisor can reach it on interrupt or parent loss.
    """

    def __init__(
        self,
        config: Config,
        registry: JobRegistry | None = None,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
    ):
        self.config = config
        self.mode = config.mode
        self.registry = registry if registry is not None else JobRegistry()
        self.on_output = on_output
        self.on_status = on_status
        self._ssh = config.ssh_options()

    def _emit_output(self, label: str, line: str) -> None:
        if self.on_output:
            self.on_output(label, line)

    def _emit_status(self, label: str, status: JobStatus) -> None:
        if self.on_status:
            self.on_status(label, status)

    def resolve_hosts(self, hosts: Hosts) -> list[Target]:
        """Turn a raw host list or a sequence of targets into targets, in order."""
        if hosts is None or isinstance(hosts, str):
            tokens: list[str | Target] = list(normalize_hosts(hosts))
        else:
            tokens = list(hosts)

        targets: list[Target] = []
        for item in tokens:
            if isinstance(item, (LocalShell, RemoteHost, Container)):
                targets.append(item)
            else:
                targets.extend(
                    parse_host(token, self.config.user, self.config.port)
                    for token in normalize_hosts(item)
                )
        return targets

    def resolve_target(self, target: Target | Hosts) -> Target:
        """Resolve exactly one target. No hosts at all means the local shell."""
        if isinstance(target, (LocalShell, RemoteHost, Container)):
            return target
        targets = self.resolve_hosts(target)
        if len(targets) > 1:
            labels = ", ".join(t.label for t in targets)
            raise ConfigurationError(
                f"Expected exactly one target, got {len(targets)}: {labels}"
            )
        return targets[0] if targets else LocalShell()

    def _wrap(self, target: Target, command: str) -> str:
        """Prefix the working directory for remote hosts and containers."""
        work_dir = self.config.work_dir
        if work_dir and not isinstance(target, LocalShell):
            return f"cd {shlex.quote(work_dir)} && {command}"
        return command

    def _announce(self, target: Target, command: str) -> None:
        if self.mode is ExecutionMode.VERBOSE:
            logger.info("%s: $ %s", target.label, command)
            self._emit_output(target.label, f"$ {command}")

    async def _start(
        self, target: Target, command: str, input: str | None = None
    ) -> ProcessHandle:
        self._announce(target, command)
        handle = await spawn(
            target,
            self._wrap(target, command),
            self.mode,
            self._ssh,
            on_output=self.on_output,
            input=input,
        )
        self.registry.add(handle)
        self._emit_status(target.label, JobStatus.RUNNING)
        return handle

    def _fail(self, outcome: ExitOutcome, handle: ProcessHandle) -> None:
        """Report a non-zero outcome and raise it."""
        self._emit_status(outcome.target.label, JobStatus.FAILED)
        logger.error(
            "Command failed on %s (exit status %d): %s",
            outcome.target.label,
            outcome.status,
            outcome.command,
        )
        # Verbose output already reached the operator while it streamed
        output = handle.output if self.mode is ExecutionMode.COMPACT else ""
        if handle.unreachable:
            raise HostUnreachable(outcome, output)
        raise CommandFailure(outcome, output)

    async def execute(
        self,
        target: Target | Hosts,
        command: str,
        *,
        capture_output: bool = False,
        input: str | None = None,
    ) -> ExecResult:
        """Run one command to completion on exactly one target.

        With ``capture_output`` the collected output is returned to the caller
        even on success; otherwise ``ExecResult.output`` is empty. ``input`` is
        piped to the command's stdin.

        Raises:
            ConfigurationError: more than one host was given.
            CommandFailure: the command exited non-zero.
        """
        target = self.resolve_target(target)
        handle = await self._start(target, command, input=input)
        status = await handle.wait()
        self.registry.discard(handle)

        outcome = ExitOutcome(status=status, target=target, command=command)
        if not outcome.ok:
            self._fail(outcome, handle)

        self._emit_status(target.label, JobStatus.SUCCESS)
        return ExecResult(output=handle.output if capture_output else "", outcome=outcome)

    async def launch_all(self, hosts: Hosts, template: str) -> Batch:
        """Start ``template`` on every host without waiting for any of them."""
        batch = Batch()
        for target in self.resolve_hosts(hosts):
            command = render_command(template, target)
            handle = await self._start(target, command)
            batch.jobs.append(JobRecord(target=target, command=command, handle=handle))

        logger.debug("Launched %d job(s): %s", len(batch), template)
        return batch

    async def await_all(self, batch: Batch) -> None:
        """Wait for every job in launch order; raise on the first failure.

        Jobs after the failing one are left running and stay registered, so
        only teardown reaches them.
        """
        for job in batch:
            job.status = await job.handle.wait()
            if job.status != 0:
                self._fail(job.outcome(), job.handle)
            self.registry.discard(job.handle)
            self._emit_status(job.target.label, JobStatus.SUCCESS)

        self.registry.discard_all(batch.handles)

    async def run_batch(self, hosts: Hosts, template: str) -> Batch:
        """Launch ``template`` across ``hosts`` and wait for all of it."""
        batch = await self.launch_all(hosts, template)
        await self.await_all(batch)
        return batch
