"""Shared fixtures for fleetrun tests."""

import asyncio
import itertools
import signal

import pytest

from fleetrun.config import Config
from fleetrun.jobs import JobRegistry
from fleetrun.targets import ExecutionMode

_ids = itertools.count(1)


class FakeHandle:
    """Process handle that exits with ``status`` after ``delay`` seconds.

    With ``delay=None`` it only exits once terminated or killed.
    """

    def __init__(self, status: int = 0, delay: float | None = 0.0, output: str = "") -> None:
        self.ident = f"fake:{next(_ids)}"
        self.status = status
        self.delay = delay
        self.output = output
        self.terminated = False
        self.killed = False
        self.waited = False
        self.unreachable = False
        self._done = asyncio.Event()

    async def wait(self) -> int:
        self.waited = True
        try:
            await asyncio.wait_for(self._done.wait(), self.delay)
        except asyncio.TimeoutError:
            pass
        return self.status

    def terminate(self) -> None:
        self.terminated = True
        self.status = -signal.SIGTERM
        self._done.set()

    def kill(self) -> None:
        self.killed = True
        self.status = -signal.SIGKILL
        self._done.set()


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def compact_config() -> Config:
    return Config(mode=ExecutionMode.COMPACT, log_path=None, watch_parent=False)


@pytest.fixture
def verbose_config() -> Config:
    return Config(mode=ExecutionMode.VERBOSE, log_path=None, watch_parent=False)


@pytest.fixture
def test_mode_config() -> Config:
    return Config(mode=ExecutionMode.TEST, log_path=None, watch_parent=False)
