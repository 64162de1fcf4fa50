"""Named deployment strategies.

A strategy is a fixed sequence of calls into the executor. Strategies are
looked up by name in a static registry.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from .config import Config
from .errors import ConfigurationError
from .executor import Executor
from .targets import Container

logger = logging.getLogger(__name__)

Strategy = Callable[[Executor, Config], Awaitable[None]]

STRATEGIES: dict[str, Strategy] = {}


def register(name: str) -> Callable[[Strategy], Strategy]:
    def decorator(func: Strategy) -> Strategy:
        STRATEGIES[name] = func
        return func

    return decorator


def get_strategy(name: str) -> Strategy:
    try:
        return STRATEGIES[name]
    except KeyError:
        available = ", ".join(sorted(STRATEGIES))
        raise ConfigurationError(
            f"Unknown strategy '{name}' (available: {available})"
        ) from None


@register("run")
async def run_parallel(executor: Executor, config: Config) -> None:
    """Run every command on all hosts at once, one batch per command."""
    hosts = config.host_set()
    for cmd in config.commands:
        logger.info("Running on %d host(s): %s", len(hosts), cmd)
        await executor.run_batch(hosts, cmd)


@register("exec")
async def run_single(executor: Executor, config: Config) -> None:
    """Run every command on one host, or locally when no host is configured."""
    target = executor.resolve_target(config.host_set())
    for cmd in config.commands:
        logger.info("Running on %s: %s", target.label, cmd)
        await executor.execute(target, cmd)


@register("build")
async def build(executor: Executor, config: Config) -> None:
    """Run the build commands inside the build container."""
    if not config.container:
        raise ConfigurationError("The build strategy needs a container")
    target = Container(config.container, runtime=config.container_runtime)
    commands = config.build_commands or config.commands
    for cmd in commands:
        logger.info("Building in %s: %s", target.label, cmd)
        await executor.execute(target, cmd)


@register("deploy")
async def deploy(executor: Executor, config: Config) -> None:
    """Build in the container when one is configured, then roll out to all hosts."""
    if config.container and config.build_commands:
        await build(executor, config)
    await run_parallel(executor, config)
