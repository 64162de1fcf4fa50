"""Tests for the single-target executor, batch launcher and batch monitor."""

import asyncio
import signal
from unittest.mock import AsyncMock, patch

import pytest

from fleetrun.config import Config
from fleetrun.errors import CommandFailure, ConfigurationError, HostUnreachable
from fleetrun.executor import Executor, JobStatus
from fleetrun.jobs import JobRegistry
from fleetrun.targets import Container, ExecutionMode, LocalShell, RemoteHost
from tests.conftest import FakeHandle


def fake_spawner(handles: list[FakeHandle]) -> AsyncMock:
    """An AsyncMock standing in for transport.spawn, handing out ``handles`` in order."""
    return AsyncMock(side_effect=handles)


class TestExecuteLocal:
    @pytest.mark.asyncio
    async def test_success_without_capture(self, compact_config: Config) -> None:
        executor = Executor(compact_config)

        result = await executor.execute(LocalShell(), "echo hello")

        assert result.outcome.ok
        assert result.outcome.target == LocalShell()
        assert result.output == ""

    @pytest.mark.asyncio
    async def test_capture_returns_output_on_success(self, compact_config: Config) -> None:
        executor = Executor(compact_config)

        result = await executor.execute(None, "echo hello; echo world >&2", capture_output=True)

        assert result.output.splitlines() == ["hello", "world"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [100000, 2000000])
    async def test_capture_single_long_line(self, compact_config: Config, size: int) -> None:
        executor = Executor(compact_config)

        result = await asyncio.wait_for(
            executor.execute(
                LocalShell(), f"head -c {size} /dev/zero | tr '\\0' a", capture_output=True
            ),
            10,
        )

        assert result.output == "a" * size

    @pytest.mark.asyncio
    async def test_compact_failure_carries_output(self, compact_config: Config) -> None:
        executor = Executor(compact_config)

        with pytest.raises(CommandFailure) as exc_info:
            await executor.execute(LocalShell(), "echo oops; exit 3")

        err = exc_info.value
        assert err.status == 3
        assert err.outcome.target == LocalShell()
        assert err.outcome.command == "echo oops; exit 3"
        assert err.output == "oops"
        assert "local" in str(err)
        assert "exit status 3" in str(err)

    @pytest.mark.asyncio
    async def test_verbose_streams_and_reports_without_output(
        self, verbose_config: Config
    ) -> None:
        lines = []
        executor = Executor(verbose_config, on_output=lambda label, line: lines.append((label, line)))

        with pytest.raises(CommandFailure) as exc_info:
            await executor.execute(LocalShell(), "echo streamed; exit 4")

        assert ("local", "$ echo streamed; exit 4") in lines
        assert ("local", "streamed") in lines
        assert exc_info.value.status == 4
        assert exc_info.value.output == ""

    @pytest.mark.asyncio
    async def test_verbose_capture_still_returns_output(self, verbose_config: Config) -> None:
        executor = Executor(verbose_config, on_output=lambda label, line: None)

        result = await executor.execute(LocalShell(), "echo both", capture_output=True)

        assert result.output == "both"

    @pytest.mark.asyncio
    async def test_input_is_piped_to_stdin(self, compact_config: Config) -> None:
        executor = Executor(compact_config)

        result = await executor.execute(
            LocalShell(), "tr a-z A-Z", capture_output=True, input="piped data\n"
        )

        assert result.output == "PIPED DATA"

    @pytest.mark.asyncio
    async def test_registry_empty_after_success(self, compact_config: Config) -> None:
        registry = JobRegistry()
        executor = Executor(compact_config, registry)

        await executor.execute(LocalShell(), "true")

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_statuses_reported(self, compact_config: Config) -> None:
        statuses = []
        executor = Executor(compact_config, on_status=lambda label, s: statuses.append(s))

        await executor.execute(LocalShell(), "true")

        assert statuses == [JobStatus.RUNNING, JobStatus.SUCCESS]


class TestExecuteTargets:
    @pytest.mark.asyncio
    async def test_two_hosts_fail_before_connecting(self, compact_config: Config) -> None:
        executor = Executor(compact_config)
        spawn = AsyncMock()

        with patch("fleetrun.executor.spawn", spawn):
            with pytest.raises(ConfigurationError, match="exactly one target"):
                await executor.execute("web1,web2", "uptime")

        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_host_string(self, compact_config: Config) -> None:
        compact_config.user = "deploy"
        executor = Executor(compact_config)
        spawn = fake_spawner([FakeHandle()])

        with patch("fleetrun.executor.spawn", spawn):
            result = await executor.execute(" web1 ", "uptime")

        assert result.outcome.target == RemoteHost("web1", user="deploy")
        assert spawn.call_args[0][0] == RemoteHost("web1", user="deploy")

    @pytest.mark.asyncio
    async def test_work_dir_applies_to_remote_and_container(self, compact_config: Config) -> None:
        compact_config.work_dir = "/srv/my app"
        executor = Executor(compact_config)
        spawn = fake_spawner([FakeHandle(), FakeHandle(), FakeHandle()])

        with patch("fleetrun.executor.spawn", spawn):
            await executor.execute(RemoteHost("web1"), "make")
            await executor.execute(Container("builder"), "make")
            await executor.execute(LocalShell(), "make")

        commands = [c[0][1] for c in spawn.call_args_list]
        assert commands == [
            "cd '/srv/my app' && make",
            "cd '/srv/my app' && make",
            "make",
        ]

    @pytest.mark.asyncio
    async def test_unreachable_host(self, compact_config: Config) -> None:
        executor = Executor(compact_config)
        handle = FakeHandle(status=255, output="ssh: connect to host web1: refused")
        handle.unreachable = True

        with patch("fleetrun.executor.spawn", fake_spawner([handle])):
            with pytest.raises(HostUnreachable) as exc_info:
                await executor.execute(RemoteHost("web1"), "uptime")

        assert exc_info.value.status == 255
        assert "refused" in exc_info.value.output

    @pytest.mark.asyncio
    async def test_status_255_from_reachable_host_is_a_plain_failure(
        self, compact_config: Config
    ) -> None:
        executor = Executor(compact_config)

        with patch("fleetrun.executor.spawn", fake_spawner([FakeHandle(status=255)])):
            with pytest.raises(CommandFailure) as exc_info:
                await executor.execute(RemoteHost("web1"), "exit 255")

        assert not isinstance(exc_info.value, HostUnreachable)


class TestLaunchAll:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 1, 5, 100])
    async def test_batch_correlates_with_hosts(self, test_mode_config: Config, count: int) -> None:
        hosts = [f"h{i}" for i in range(count)]
        executor = Executor(test_mode_config)

        batch = await executor.launch_all(",".join(hosts), "deploy --node {host}")

        assert len(batch) == count
        assert [t.address for t in batch.targets] == hosts
        assert batch.commands == [f"deploy --node h{i}" for i in range(count)]
        assert len(batch.handles) == count

    @pytest.mark.asyncio
    async def test_duplicate_hosts_keep_their_own_records(self, compact_config: Config) -> None:
        handles = [FakeHandle(), FakeHandle(), FakeHandle()]
        executor = Executor(compact_config)

        with patch("fleetrun.executor.spawn", fake_spawner(handles)):
            batch = await executor.launch_all("a b a", "echo {host}")

        assert [t.address for t in batch.targets] == ["a", "b", "a"]
        assert batch.handles == handles

    @pytest.mark.asyncio
    async def test_launch_registers_without_waiting(self, compact_config: Config) -> None:
        registry = JobRegistry()
        handles = [FakeHandle(delay=None), FakeHandle(delay=None)]
        executor = Executor(compact_config, registry)

        with patch("fleetrun.executor.spawn", fake_spawner(handles)):
            await executor.launch_all("a b", "sleep 100")

        assert len(registry) == 2
        assert not any(h.waited for h in handles)

    @pytest.mark.asyncio
    async def test_verbose_announces_rendered_command(self, verbose_config: Config) -> None:
        lines = []
        executor = Executor(verbose_config, on_output=lambda label, line: lines.append((label, line)))

        with patch("fleetrun.executor.spawn", fake_spawner([FakeHandle(), FakeHandle()])):
            await executor.launch_all("a b", "restart {host}")

        assert lines == [("a", "$ restart a"), ("b", "$ restart b")]

    @pytest.mark.asyncio
    async def test_real_local_batch(self, compact_config: Config) -> None:
        executor = Executor(compact_config)

        batch = await executor.run_batch([LocalShell()] * 3, "echo {target}")

        assert [job.status for job in batch] == [0, 0, 0]
        assert [job.output for job in batch] == ["local"] * 3


class TestAwaitAll:
    @pytest.mark.asyncio
    async def test_reports_failing_index_regardless_of_completion_order(
        self, compact_config: Config
    ) -> None:
        # Index 2 fails and finishes first, everything else is slower
        handles = [
            FakeHandle(delay=0.05),
            FakeHandle(delay=0.04),
            FakeHandle(status=7, delay=0.0, output="boom"),
            FakeHandle(delay=0.03),
            FakeHandle(delay=0.02),
        ]
        executor = Executor(compact_config)

        with patch("fleetrun.executor.spawn", fake_spawner(handles)):
            batch = await executor.launch_all("h0 h1 h2 h3 h4", "run {host}")
            with pytest.raises(CommandFailure) as exc_info:
                await executor.await_all(batch)

        outcome = exc_info.value.outcome
        assert outcome.target.address == "h2"
        assert outcome.command == "run h2"
        assert outcome.status == 7
        assert exc_info.value.output == "boom"

    @pytest.mark.asyncio
    async def test_launch_order_masks_earlier_completing_failure(
        self, compact_config: Config
    ) -> None:
        handles = [
            FakeHandle(delay=0.0),
            FakeHandle(status=2, delay=0.05),
            FakeHandle(status=9, delay=0.0),
        ]
        executor = Executor(compact_config)

        with patch("fleetrun.executor.spawn", fake_spawner(handles)):
            batch = await executor.launch_all("a b c", "x")
            with pytest.raises(CommandFailure) as exc_info:
                await executor.await_all(batch)

        assert exc_info.value.outcome.target.address == "b"
        assert exc_info.value.status == 2

    @pytest.mark.asyncio
    async def test_stragglers_left_running_and_registered(self, compact_config: Config) -> None:
        registry = JobRegistry()
        handles = [FakeHandle(status=1), FakeHandle(delay=None), FakeHandle(delay=None)]
        executor = Executor(compact_config, registry)

        with patch("fleetrun.executor.spawn", fake_spawner(handles)):
            batch = await executor.launch_all("a b c", "x")
            with pytest.raises(CommandFailure):
                await executor.await_all(batch)

        assert not handles[1].waited
        assert not handles[1].terminated
        assert handles[1] in registry
        assert handles[2] in registry

    @pytest.mark.asyncio
    async def test_success_clears_registry(self, compact_config: Config) -> None:
        registry = JobRegistry()
        executor = Executor(compact_config, registry)

        with patch("fleetrun.executor.spawn", fake_spawner([FakeHandle(), FakeHandle()])):
            batch = await executor.run_batch("a b", "x")

        assert len(registry) == 0
        assert [job.status for job in batch] == [0, 0]

    @pytest.mark.asyncio
    async def test_terminated_job_resolves_wait(self, compact_config: Config) -> None:
        executor = Executor(compact_config)
        batch = await executor.launch_all([LocalShell()], "sleep 30; echo never")

        batch[0].handle.terminate()
        with pytest.raises(CommandFailure) as exc_info:
            await executor.await_all(batch)

        assert exc_info.value.status == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_empty_batch(self, compact_config: Config) -> None:
        executor = Executor(compact_config)

        batch = await executor.run_batch("", "x")

        assert len(batch) == 0


def test_resolve_target_defaults_to_local(compact_config: Config) -> None:
    executor = Executor(compact_config)
    assert executor.resolve_target([]) == LocalShell()
    assert executor.resolve_target(Container("c1")) == Container("c1")


def test_mode_is_taken_from_config() -> None:
    executor = Executor(Config(mode=ExecutionMode.TEST))
    assert executor.mode is ExecutionMode.TEST
