"""Test environment handle.

Environment wires the runtime, port allocator, cleanup registry and
lifecycle manager together. It replaces process-wide state: a test session
creates one, starts it (sweeping orphans from earlier runs) and closes it.

Usage:
    async with Environment() as env:
        await env.with_instance(presets.redis("cache"), run_checks)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from scratchbox.archive import ArchiveTransfer
from scratchbox.cleanup import CleanupRegistry
from scratchbox.config import ScratchboxConfig, get_config
from scratchbox.executor import CommandExecutor
from scratchbox.lifecycle import Instance, InstanceSpec, LifecycleManager
from scratchbox.logging_schema import LogEvent
from scratchbox.naming import ResourceNaming
from scratchbox.ports import PortAllocator
from scratchbox.readiness import StateChangeCallback
from scratchbox.runtimes import ContainerRuntime, create_runtime

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Environment:
    """Owns the shared runtime handle and everything built on it."""

    def __init__(
        self,
        config: ScratchboxConfig | None = None,
        runtime: ContainerRuntime | None = None,
        on_change: StateChangeCallback | None = None,
    ) -> None:
        self.config = config or get_config()
        self.runtime = runtime or create_runtime(self.config)
        self.naming = ResourceNaming(self.config)
        self.ports = PortAllocator(self.config.ports)
        self.cleanup = CleanupRegistry(self.runtime, self.naming, self.config.cleanup)
        self.manager = LifecycleManager(
            self.runtime,
            self.ports,
            self.cleanup,
            config=self.config,
            naming=self.naming,
            on_change=on_change,
        )
        self._started = False

    @property
    def executor(self) -> CommandExecutor:
        return self.manager.executor

    @property
    def archive(self) -> ArchiveTransfer:
        return self.manager.archive

    async def start(self) -> None:
        """Ping the engine, then run the configured startup sweep and signal setup.

        Raises:
            RuntimeUnavailableError: The engine cannot be reached.
            CleanupError: Leftover containers could not be removed.
        """
        if self._started:
            return
        await self.runtime.ping()
        if self.config.cleanup.sweep_on_start:
            await self.cleanup.sweep()
        if self.config.cleanup.handle_signals:
            self.cleanup.install_signal_handlers()
        self._started = True
        logger.info(
            "Scratchbox environment started (backend=%s)",
            self.runtime.name,
            extra={"event": LogEvent.ENVIRONMENT_STARTED, "backend": self.runtime.name},
        )

    async def close(self) -> None:
        self.cleanup.remove_signal_handlers()
        await self.runtime.close()
        self._started = False
        logger.info("Scratchbox environment closed", extra={"event": LogEvent.ENVIRONMENT_CLOSED})

    async def __aenter__(self) -> Environment:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def with_instance(
        self, spec: InstanceSpec, callback: Callable[[Instance], T | Awaitable[T]]
    ) -> T:
        return await self.manager.with_instance(spec, callback)

    @asynccontextmanager
    async def instance(self, spec: InstanceSpec) -> AsyncIterator[Instance]:
        async with self.manager.instance(spec) as instance:
            yield instance
