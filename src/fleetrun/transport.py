"""Process transports: start one command on one target without waiting.

Every transport returns a handle with the same surface (``ident``,
``output``, ``wait()``, ``terminate()``, ``kill()``) so the engine and the
teardown path never care which kind of target a job runs on.
"""

from __future__ import annotations

import asyncio
import codecs
import itertools
import logging
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import asyncssh

from .targets import Container, ExecutionMode, LocalShell, RemoteHost, Target

logger = logging.getLogger(__name__)

# Type alias for output callback
OutputCallback = Callable[[str, str], None]  # (target_label, line) -> None

# Seconds to keep draining output after the process itself has exited.
OUTPUT_DRAIN_GRACE = 1.0

# Bytes (or characters) read from a child's output per call. Lines are split
# by hand so a single line of any length never stalls the reader.
READ_CHUNK = 65536

# Status reported when the SSH transport itself fails, as the ssh client does.
SSH_TRANSPORT_STATUS = 255
COMMAND_NOT_FOUND_STATUS = 127

_remote_ids = itertools.count(1)
_dry_ids = itertools.count(1)


@dataclass
class SSHOptions:
    """Connection settings shared by every remote job of a run."""

    connect_timeout: float = 10
    client_keys: list[Path] = field(default_factory=list)
    known_hosts: str | None = None

    def known_hosts_arg(self):
        """Map the setting onto asyncssh: default file, explicit path or off."""
        if self.known_hosts is None:
            return ()
        if self.known_hosts.lower() == "none":
            return None
        return self.known_hosts


class _StreamingHandle:
    """Output buffering and live forwarding shared by all handles."""

    ident: str = ""
    unreachable: bool = False

    def __init__(self, label: str, on_output: OutputCallback | None) -> None:
        self.label = label
        self.on_output = on_output
        self._lines: list[str] = []

    @property
    def output(self) -> str:
        return "\n".join(self._lines)

    def _emit(self, line: str) -> None:
        self._lines.append(line)
        if self.on_output:
            self.on_output(self.label, line)

    def _emit_line(self, line: str) -> None:
        self._emit(line.rstrip("\r"))

    async def _read_stream(self, stream) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        partial: list[str] = []
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            if isinstance(chunk, bytes):
                chunk = decoder.decode(chunk)
            *complete, rest = chunk.split("\n")
            if complete:
                partial.append(complete[0])
                self._emit_line("".join(partial))
                for line in complete[1:]:
                    self._emit_line(line)
                partial = []
            partial.append(rest)

        partial.append(decoder.decode(b"", final=True))
        tail = "".join(partial)
        if tail:
            self._emit_line(tail)


class LocalProcess(_StreamingHandle):
    """A child process of fleetrun: ``sh -c`` or a container runtime exec.

    The child leads its own process group so terminating it also reaches
    anything the shell started.
    """

    def __init__(
        self,
        argv: list[str],
        label: str,
        on_output: OutputCallback | None = None,
        input: str | None = None,
    ) -> None:
        super().__init__(label, on_output)
        self.argv = argv
        self.input = input
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Future | None = None
        self._feeder: asyncio.Future | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    async def start(self) -> LocalProcess:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE if self.input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError:
            self._emit(f"{self.argv[0]}: command not found")
            self.ident = f"missing:{self.argv[0]}"
            return self
        self.ident = str(self._proc.pid)
        self._reader = asyncio.ensure_future(self._read_stream(self._proc.stdout))
        if self.input is not None:
            self._feeder = asyncio.ensure_future(self._feed(self.input))
        return self

    async def _feed(self, data: str) -> None:
        stdin = self._proc.stdin
        try:
            stdin.write(data.encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("%s closed stdin before reading all input", self.label)
        finally:
            stdin.close()

    async def wait(self) -> int:
        if self._proc is None:
            return COMMAND_NOT_FOUND_STATUS
        status = await self._proc.wait()
        # A background grandchild may hold the pipe open after the shell exits.
        try:
            await asyncio.wait_for(asyncio.shield(self._reader), OUTPUT_DRAIN_GRACE)
        except asyncio.TimeoutError:
            self._reader.cancel()
        except (OSError, ValueError) as e:
            # The exit status stands even when the rest of the output is lost
            logger.warning("Lost output of %s: %s", self.label, e)
        return status

    def _signal_group(self, sig: int) -> None:
        if self._proc is None or self._proc.returncode is not None:
            return
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass

    def terminate(self) -> None:
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)


class RemoteProcess(_StreamingHandle):
    """A command on an SSH host, one connection per job."""

    def __init__(
        self,
        target: RemoteHost,
        command: str,
        options: SSHOptions,
        on_output: OutputCallback | None = None,
        input: str | None = None,
        pty: bool = False,
    ) -> None:
        super().__init__(target.label, on_output)
        self.target = target
        self.command = command
        self.options = options
        self.input = input
        self.pty = pty
        self.ident = f"ssh:{target.label}#{next(_remote_ids)}"
        self.unreachable = False
        self._conn: asyncssh.SSHClientConnection | None = None
        self._proc: asyncssh.SSHClientProcess | None = None
        self._task: asyncio.Task | None = None
        self._stop_signal: int | None = None

    async def start(self) -> RemoteProcess:
        self._task = asyncio.ensure_future(self._run())
        return self

    async def _run(self) -> int:
        try:
            self._conn = await asyncssh.connect(
                self.target.address,
                port=self.target.port,
                username=self.target.user or (),
                client_keys=[str(key) for key in self.options.client_keys] or (),
                known_hosts=self.options.known_hosts_arg(),
                connect_timeout=self.options.connect_timeout,
                agent_forwarding=False,
            )
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            self.unreachable = True
            self._emit(f"ssh: connect to host {self.target.label}: {e}")
            return SSH_TRANSPORT_STATUS

        async with self._conn:
            try:
                self._proc = await self._conn.create_process(
                    self.command,
                    term_type="xterm" if self.pty else None,
                    stderr=asyncssh.STDOUT,
                    encoding="utf-8",
                )
                if self.input is not None:
                    self._proc.stdin.write(self.input)
                    self._proc.stdin.write_eof()
                await self._read_stream(self._proc.stdout)
                await self._proc.wait(check=False)
            except (asyncssh.Error, OSError) as e:
                if self._stop_signal is None:
                    self._emit(f"ssh: {e}")
                    return SSH_TRANSPORT_STATUS

        if self._stop_signal is not None:
            return -self._stop_signal
        if self._proc.returncode is None:
            return SSH_TRANSPORT_STATUS
        return self._proc.returncode

    async def wait(self) -> int:
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return -(self._stop_signal or signal.SIGTERM)
        return self._task.result()

    def _stop(self, sig: int) -> None:
        if self._task is None or self._task.done():
            return
        self._stop_signal = sig
        if self._conn is None:
            self._task.cancel()
            return
        if self._proc is not None:
            try:
                self._proc.send_signal(signal.Signals(sig).name[3:])
            except OSError:
                logger.debug("Channel to %s already closed", self.label)
        self._conn.close()

    def terminate(self) -> None:
        self._stop(signal.SIGTERM)

    def kill(self) -> None:
        self._stop(signal.SIGKILL)


class DryRunProcess(_StreamingHandle):
    """Stands in for a job in test mode. Nothing is spawned."""

    def __init__(self, label: str) -> None:
        super().__init__(label, None)
        self.ident = f"dry:{next(_dry_ids)}"

    async def wait(self) -> int:
        return 0

    def terminate(self) -> None:
        pass

    def kill(self) -> None:
        pass


def local_argv(target: LocalShell | Container, command: str, interactive: bool = False) -> list[str]:
    """Build the argv that runs ``command`` through a POSIX shell on target."""
    if isinstance(target, Container):
        argv = [target.runtime, "exec"]
        if interactive:
            argv.append("-i")
        return argv + [target.id, "sh", "-c", command]
    return ["sh", "-c", command]


async def spawn(
    target: Target,
    command: str,
    mode: ExecutionMode,
    ssh: SSHOptions,
    on_output: OutputCallback | None = None,
    input: str | None = None,
):
    """Start ``command`` on ``target`` and return its handle without waiting."""
    if mode is ExecutionMode.TEST:
        logger.info("[test] %s: %s", target.label, command)
        return DryRunProcess(target.label)

    stream = on_output if mode is ExecutionMode.VERBOSE else None
    if isinstance(target, RemoteHost):
        handle = RemoteProcess(
            target,
            command,
            ssh,
            on_output=stream,
            input=input,
            pty=mode is ExecutionMode.VERBOSE and input is None,
        )
    else:
        argv = local_argv(target, command, interactive=input is not None)
        handle = LocalProcess(argv, target.label, on_output=stream, input=input)
    return await handle.start()
