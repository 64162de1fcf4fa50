"""Job records, batches and the registry of in-flight processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Protocol

from .targets import Target


class ProcessHandle(Protocol):
    """A started command on one target."""

    ident: str
    output: str
    unreachable: bool  # the transport never reached the target

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


@dataclass(frozen=True)
class ExitOutcome:
    """Exit status of one command on one target."""

    status: int
    target: Target
    command: str

    @property
    def ok(self) -> bool:
        return self.status == 0


@dataclass
class ExecResult:
    """Return value of a single-target execution."""

    output: str
    outcome: ExitOutcome


@dataclass
class JobRecord:
    """One launched unit of work in a batch."""

    target: Target
    command: str
    handle: ProcessHandle
    status: int | None = None

    @property
    def output(self) -> str:
        return self.handle.output

    def outcome(self) -> ExitOutcome:
        if self.status is None:
            raise RuntimeError(f"Job on {self.target.label} has not finished")
        return ExitOutcome(status=self.status, target=self.target, command=self.command)


@dataclass
class Batch:
    """Jobs started by one launch call, in launch order."""

    jobs: list[JobRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.jobs)

    def __iter__(self) -> Iterator[JobRecord]:
        return iter(self.jobs)

    def __getitem__(self, index: int) -> JobRecord:
        return self.jobs[index]

    @property
    def handles(self) -> list[ProcessHandle]:
        return [job.handle for job in self.jobs]

    @property
    def targets(self) -> list[Target]:
        return [job.target for job in self.jobs]

    @property
    def commands(self) -> list[str]:
        return [job.command for job in self.jobs]


class JobRegistry:
    """Process handles that teardown must be able to reach.

    Only the event loop thread mutates the registry. Teardown reads it through
    ``snapshot()``, which rebinds an immutable tuple on every change, so a
    signal handler never observes a half-applied update.
    """

    def __init__(self) -> None:
        self._handles: tuple[ProcessHandle, ...] = ()

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, handle: object) -> bool:
        return any(h is handle for h in self._handles)

    def add(self, handle: ProcessHandle) -> None:
        self._handles = self._handles + (handle,)

    def discard(self, handle: ProcessHandle) -> None:
        self._handles = tuple(h for h in self._handles if h is not handle)

    def discard_all(self, handles: list[ProcessHandle]) -> None:
        ids = {id(h) for h in handles}
        self._handles = tuple(h for h in self._handles if id(h) not in ids)

    def snapshot(self) -> tuple[ProcessHandle, ...]:
        return self._handles
