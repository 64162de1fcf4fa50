"""Interrupt handling and parent-process watchdog.

Two independent sources can end a run early: a termination signal sent to
fleetrun, and the disappearance of the process that launched it. Both set the
same stop token and go through ``Supervisor.stop``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import Any, Awaitable

import psutil

from .errors import InterruptedByOperator, OrphanedByParent
from .jobs import JobRegistry

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class StopReason(Enum):
    INTERRUPTED = "interrupted"
    ORPHANED = "orphaned"


class Supervisor:
    """Owns the stop token for one run and tears the job tree down."""

    def __init__(
        self,
        registry: JobRegistry,
        parent_pid: int | None = None,
        poll_interval: float = 0.5,
        watch_parent: bool = True,
    ) -> None:
        self.registry = registry
        self.poll_interval = poll_interval
        self._initial_ppid = os.getppid()
        self.parent_pid = parent_pid if watch_parent else None
        # ppid 1 means init adopted us already, nothing left to watch
        if self.parent_pid is None and watch_parent and self._initial_ppid > 1:
            self.parent_pid = self._initial_ppid
        self.reason: StopReason | None = None
        self._stopped: asyncio.Event | None = None
        self._installed: list[int] = []

    @property
    def stopping(self) -> bool:
        return self.reason is not None

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.stop, StopReason.INTERRUPTED)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not on the main thread, or no signal support on this platform
                logger.debug("Cannot install handler for %s", signal.Signals(sig).name)
                continue
            self._installed.append(sig)

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed = []

    def stop(self, reason: StopReason = StopReason.INTERRUPTED) -> None:
        """Tear down every tracked job. Later calls are ignored."""
        if self.stopping:
            return
        self.reason = reason

        handles = self.registry.snapshot()
        if reason is StopReason.INTERRUPTED:
            logger.warning("Stop requested, terminating %d job(s)", len(handles))
            for handle in handles:
                handle.terminate()
        else:
            for handle in handles:
                handle.kill()
            self.kill_descendants()

        if self._stopped is not None:
            self._stopped.set()

        if reason is StopReason.ORPHANED:
            self.kill_self()

    def kill_descendants(self) -> None:
        """Force-kill every process below this one in the process tree."""
        try:
            children = psutil.Process().children(recursive=True)
        except psutil.Error as e:
            logger.debug("Cannot list child processes: %s", e)
            return
        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                continue

    def kill_self(self) -> None:
        os.kill(os.getpid(), signal.SIGKILL)

    def parent_alive(self) -> bool:
        if self.parent_pid is None:
            return True
        if not psutil.pid_exists(self.parent_pid):
            return False
        # A direct parent that exited leaves us re-parented
        if self.parent_pid == self._initial_ppid and os.getppid() != self.parent_pid:
            return False
        return True

    async def watch_parent(self) -> None:
        """Poll the tracked parent until it is gone, then tear down."""
        while not self.stopping:
            if not self.parent_alive():
                logger.warning("Parent process %s is gone, killing job tree", self.parent_pid)
                self.stop(StopReason.ORPHANED)
                return
            await asyncio.sleep(self.poll_interval)

    async def run(self, work: Awaitable[Any]) -> Any:
        """Run ``work`` until it finishes or a stop is requested.

        Raises:
            InterruptedByOperator: a termination signal stopped the run.
            OrphanedByParent: the parent vanished (only seen when the final
                self-kill is patched out).
        """
        loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()
        self.install_signal_handlers(loop)

        task = asyncio.ensure_future(work)
        stopper = asyncio.ensure_future(self._stopped.wait())
        watcher = asyncio.ensure_future(self.watch_parent()) if self.parent_pid else None
        if watcher is not None:
            watcher.add_done_callback(_report_watchdog_failure)
        try:
            await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if not self.stopping:
                return task.result()

            # Jobs killed by teardown may already have failed the work
            task.cancel()
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                logger.debug("Work ended during teardown: %s", task.exception())
            if self.reason is StopReason.ORPHANED:
                raise OrphanedByParent(f"Parent process {self.parent_pid} disappeared")
            raise InterruptedByOperator("Stopped by operator")
        finally:
            helpers = {t for t in (stopper, watcher) if t is not None}
            for pending in helpers:
                pending.cancel()
            await asyncio.wait(helpers)
            self.remove_signal_handlers(loop)


def _report_watchdog_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Parent watchdog failed, job tree is no longer guarded: %s", task.exception())
