"""Instance lifecycle.

LifecycleManager provisions one instance per call, hands it to the caller
and tears it down unconditionally afterwards:

    ports -> pull -> create -> start -> readiness monitor (background)
          -> files -> setup -> concurrent setup -> start commands
          -> wait healthy -> post-ready setup -> callback -> stop -> remove

Errors from provisioning or from the callback propagate; errors during
teardown are logged and recorded on the instance, never raised over them.
"""

from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar, Union

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from scratchbox.archive import ArchiveTransfer
from scratchbox.cleanup import CleanupRegistry
from scratchbox.config import ScratchboxConfig, get_config
from scratchbox.executor import CommandExecutor
from scratchbox.infra.docker import HealthConfig
from scratchbox.initializer import ConcurrentInitializer
from scratchbox.logging_schema import LogEvent
from scratchbox.naming import ResourceNaming
from scratchbox.ports import PortAllocator
from scratchbox.readiness import Probe, ReadinessMonitor, StateChangeCallback
from scratchbox.runtimes.base import ContainerRuntime, ContainerSpec

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANAGED_LABEL = "io.scratchbox.instance"


def normalize_port(port: int | str) -> str:
    """'5432' / 5432 -> '5432/tcp'."""
    value = str(port)
    return value if "/" in value else f"{value}/tcp"


class InstancePhase(str, Enum):
    PENDING = "pending"
    PULLING = "pulling"
    CREATING = "creating"
    STARTING = "starting"
    INITIALIZING = "initializing"
    READY = "ready"
    STOPPING = "stopping"
    REMOVED = "removed"
    FAILED = "failed"


@dataclass
class Instance:
    """A running container owned by one ``with_instance`` call."""

    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    # "5432/tcp" -> host port
    ports: dict[str, int] = field(default_factory=dict)
    id: str | None = None
    host: str = "localhost"
    phase: InstancePhase = InstancePhase.PENDING
    teardown_error: BaseException | None = None

    def port(self, container_port: int | str) -> int:
        """Host port published for ``container_port``."""
        key = normalize_port(container_port)
        try:
            return self.ports[key]
        except KeyError:
            raise KeyError(f"{self.name} does not publish {key}") from None

    def address(self, container_port: int | str) -> str:
        return f"{self.host}:{self.port(container_port)}"


# A setup step is either an argv run attached in the instance, or a coroutine
# function taking the instance and the executor.
SetupAction = Callable[[Instance, CommandExecutor], Awaitable[Any]]
SetupStep = Union[list[str], SetupAction]


class FileInjection(BaseModel):
    """A file or tree to copy into the instance before setup runs.

    Either ``source`` (a path on the host) or ``data`` plus ``filename``
    (in-memory content) must be given.
    """

    dest: str
    source: Path | None = None
    data: bytes | None = None
    filename: str | None = None
    mode: int = 0o644
    compress: bool = False
    # run `mkdir -p dest` first; the engine only extracts into existing paths
    create_dest: bool = False

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _one_source(self) -> FileInjection:
        if (self.source is None) == (self.data is None):
            raise ValueError("exactly one of source or data is required")
        if self.data is not None and not self.filename:
            raise ValueError("filename is required with data")
        return self


class InstanceSpec(BaseModel):
    """Declarative description of one instance."""

    name: str
    image: str
    # container port -> fixed host port, or None for an allocated one
    ports: dict[str, int | None] = {}
    env: dict[str, str] = {}
    cmd: list[str] = []
    healthcheck: HealthConfig | None = None
    probe: Probe | None = None
    files: list[FileInjection] = []
    setup: list[SetupStep] = []
    concurrent_setup: list[SetupStep] = []
    start_commands: list[list[str]] = []
    post_ready_setup: list[SetupStep] = []
    wait_started_before_setup: bool = False
    readiness_interval: float | None = None
    readiness_timeout: float | None = None
    tty: bool = False
    binds: list[str] = []
    labels: dict[str, str] = {}

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @field_validator("ports", mode="before")
    @classmethod
    def _normalize_ports(cls, value: Any) -> dict[str, int | None]:
        if isinstance(value, dict):
            return {normalize_port(k): v for k, v in value.items()}
        return {normalize_port(p): None for p in value}


@dataclass
class _Provisioning:
    instance: Instance
    leased: list[int] = field(default_factory=list)
    monitor: ReadinessMonitor | None = None


class LifecycleManager:
    """Runs the provisioning sequence and guarantees teardown."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        ports: PortAllocator,
        cleanup: CleanupRegistry,
        config: ScratchboxConfig | None = None,
        naming: ResourceNaming | None = None,
        on_change: StateChangeCallback | None = None,
    ) -> None:
        self._config = config or get_config()
        self._runtime = runtime
        self._ports = ports
        self._cleanup = cleanup
        self._naming = naming or ResourceNaming(self._config)
        self._on_change = on_change
        self.executor = CommandExecutor(runtime)
        self.archive = ArchiveTransfer()

    async def with_instance(
        self, spec: InstanceSpec, callback: Callable[[Instance], T | Awaitable[T]]
    ) -> T:
        """Provision ``spec``, run ``callback(instance)`` and tear down.

        The callback may be a plain function or a coroutine function. Its
        return value is returned; its exception is re-raised after teardown.
        """
        async with self.instance(spec) as instance:
            result = callback(instance)
            if inspect.isawaitable(result):
                result = await result
            return result

    @asynccontextmanager
    async def instance(self, spec: InstanceSpec) -> AsyncIterator[Instance]:
        """``async with`` form of :meth:`with_instance`."""
        instance = Instance(
            name=self._naming.container_name(spec.name),
            image=spec.image,
            env=dict(spec.env),
        )
        provisioning = _Provisioning(instance=instance)
        try:
            await self._provision(provisioning, spec)
        except BaseException as e:
            instance.phase = InstancePhase.FAILED
            logger.error(
                "Failed to provision %s: %s",
                instance.name,
                e,
                extra={"event": LogEvent.INSTANCE_FAILED, "container": instance.name},
            )
            await self._teardown(provisioning)
            raise

        try:
            yield instance
        finally:
            await self._teardown(provisioning)

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def _provision(self, provisioning: _Provisioning, spec: InstanceSpec) -> None:
        instance = provisioning.instance

        for container_port, fixed in spec.ports.items():
            if fixed is None:
                fixed = self._ports.acquire_port()
                provisioning.leased.append(fixed)
            instance.ports[container_port] = fixed

        instance.phase = InstancePhase.PULLING
        await self._runtime.pull_image(spec.image)

        instance.phase = InstancePhase.CREATING
        container_spec = ContainerSpec(
            name=instance.name,
            image=spec.image,
            cmd=spec.cmd,
            env=spec.env,
            ports=instance.ports,
            healthcheck=spec.healthcheck,
            tty=spec.tty,
            labels={**spec.labels, MANAGED_LABEL: spec.name},
            binds=spec.binds,
            bind_host=self._config.runtime.bind_host,
        )
        self._cleanup.track(instance.name)
        instance.id = await self._runtime.create(container_spec)

        instance.phase = InstancePhase.STARTING
        await self._runtime.start(instance.id)

        readiness = self._config.readiness
        monitor = ReadinessMonitor(
            self._runtime,
            instance.id,
            instance.name,
            probe=spec.probe,
            interval=(
                readiness.interval
                if spec.readiness_interval is None
                else spec.readiness_interval
            ),
            timeout=(
                readiness.timeout if spec.readiness_timeout is None else spec.readiness_timeout
            ),
            on_change=self._on_change,
        )
        provisioning.monitor = monitor
        monitor.start()

        instance.phase = InstancePhase.INITIALIZING
        if spec.wait_started_before_setup:
            await monitor.wait_started()

        for injection in spec.files:
            await self._inject(instance, injection)

        for step in spec.setup:
            await self._run_step(instance, step)

        if spec.concurrent_setup:
            await ConcurrentInitializer().run_all_or_raise(
                functools.partial(self._run_step, instance, step)
                for step in spec.concurrent_setup
            )

        for argv in spec.start_commands:
            await self.executor.start(instance.id, argv)

        await monitor.wait()

        for step in spec.post_ready_setup:
            await self._run_step(instance, step)

        instance.phase = InstancePhase.READY
        logger.info(
            "Instance %s is ready",
            instance.name,
            extra={
                "event": LogEvent.INSTANCE_READY,
                "container": instance.name,
                "ports": instance.ports,
            },
        )

    async def _inject(self, instance: Instance, injection: FileInjection) -> None:
        assert instance.id is not None
        if injection.create_dest:
            await self.executor.run(instance.id, ["mkdir", "-p", injection.dest])

        if injection.source is not None:
            stream = self.archive.build(injection.source, compress=injection.compress)
            what = str(injection.source)
        else:
            assert injection.data is not None and injection.filename is not None
            stream = self.archive.from_bytes(
                injection.filename,
                injection.data,
                mode=injection.mode,
                compress=injection.compress,
            )
            what = injection.filename

        await self._runtime.copy_archive_into(instance.id, injection.dest, stream)
        logger.debug("Injected %s into %s:%s", what, instance.name, injection.dest)

    async def _run_step(self, instance: Instance, step: SetupStep) -> Any:
        assert instance.id is not None
        if callable(step):
            return await step(instance, self.executor)
        return await self.executor.run(instance.id, step)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _teardown(self, provisioning: _Provisioning) -> None:
        instance = provisioning.instance
        failed = instance.phase is InstancePhase.FAILED

        if provisioning.monitor is not None:
            await provisioning.monitor.stop()

        if instance.id is not None:
            if not failed:
                instance.phase = InstancePhase.STOPPING
            try:
                await self._runtime.stop(instance.id, self._config.runtime.stop_grace)
            except Exception as e:
                self._record_teardown_error(instance, "stop", e)
            try:
                await self._runtime.remove(instance.id, force=True)
            except Exception as e:
                self._record_teardown_error(instance, "remove", e)

        self._cleanup.untrack(instance.name)
        for port in provisioning.leased:
            self._ports.release(port)
        if not failed:
            instance.phase = InstancePhase.REMOVED

    @staticmethod
    def _record_teardown_error(instance: Instance, action: str, error: Exception) -> None:
        if instance.teardown_error is None:
            instance.teardown_error = error
        logger.error(
            "Failed to %s %s: %s",
            action,
            instance.name,
            error,
            extra={"event": LogEvent.TEARDOWN_FAILED, "container": instance.name},
        )
