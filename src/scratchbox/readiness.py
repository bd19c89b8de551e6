"""Readiness probing for starting containers.

A ReadinessMonitor polls one container on a fixed interval until it is
healthy, has died, or the absolute timeout has elapsed:

    STARTING -> PROBING -> HEALTHY | TIMED_OUT | DIED

The polling loop runs as its own asyncio task next to the setup steps. It
checks a cancellation token every cycle and signals waiters through events,
so it never blocks on a listener and never outlives the container once the
owner calls stop().
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from scratchbox.errors import ExecFailedError, InstanceDiedError, ProbeTimedOutError
from scratchbox.logging_schema import LogEvent

if TYPE_CHECKING:
    from scratchbox.runtimes.base import ContainerRuntime, ContainerState

logger = logging.getLogger(__name__)

STATUS_STARTING = "starting"
STATUS_HEALTHY = "healthy"
STATUS_UNHEALTHY = "unhealthy"


class ReadinessState(str, Enum):
    """Monitor states. Transitions only move forward."""

    STARTING = "starting"
    PROBING = "probing"
    HEALTHY = "healthy"
    TIMED_OUT = "timed_out"
    DIED = "died"

    @property
    def is_terminal(self) -> bool:
        return self in (ReadinessState.HEALTHY, ReadinessState.TIMED_OUT, ReadinessState.DIED)


_ORDER = list(ReadinessState)


@dataclass(frozen=True)
class ProbeResult:
    status: str
    output: str = ""

    @property
    def healthy(self) -> bool:
        return self.status == STATUS_HEALTHY


# =============================================================================
# Probes
# =============================================================================


class Probe(ABC):
    """One readiness check against a running container."""

    @abstractmethod
    async def check(
        self, runtime: ContainerRuntime, container_id: str, state: ContainerState
    ) -> ProbeResult: ...


class HealthStatusProbe(Probe):
    """Reads the engine's native health-check status.

    Containers without a health check count as healthy once running.
    """

    async def check(
        self, runtime: ContainerRuntime, container_id: str, state: ContainerState
    ) -> ProbeResult:
        if state.health is None:
            return ProbeResult(STATUS_HEALTHY)
        return ProbeResult(state.health, state.last_health_output)


class CommandProbe(Probe):
    """Runs a command inside the container; exit code 0 means healthy."""

    def __init__(self, argv: list[str]) -> None:
        self.argv = list(argv)

    @classmethod
    def shell(cls, script: str, shell: str = "/bin/sh") -> CommandProbe:
        return cls([shell, "-c", script])

    async def check(
        self, runtime: ContainerRuntime, container_id: str, state: ContainerState
    ) -> ProbeResult:
        try:
            result = await runtime.exec(container_id, self.argv, attach=True)
        except ExecFailedError as e:
            return ProbeResult(STATUS_UNHEALTHY, e.output)
        return ProbeResult(STATUS_HEALTHY, result.output)


# =============================================================================
# Monitor
# =============================================================================


StateChangeCallback = Callable[[str, str], None]


class ReadinessMonitor:
    """Polls a container until HEALTHY, DIED or TIMED_OUT."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        container_id: str,
        name: str,
        probe: Probe | None = None,
        interval: float = 1.0,
        timeout: float = 60.0,
        on_change: StateChangeCallback | None = None,
    ) -> None:
        self._runtime = runtime
        self._container_id = container_id
        self._name = name
        self._probe = probe or HealthStatusProbe()
        self._interval = interval
        self._timeout = timeout
        self._on_change = on_change

        self._state = ReadinessState.STARTING
        self._status: str | None = None
        self._last_output = ""
        self._exit_code: int | None = None
        self._error: BaseException | None = None
        self._polls = 0

        self._cancel = asyncio.Event()
        self._started = asyncio.Event()
        self._done = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ReadinessState:
        return self._state

    @property
    def status(self) -> str | None:
        """Most recent status reported by the probe."""
        return self._status

    @property
    def last_output(self) -> str:
        return self._last_output

    @property
    def polls(self) -> int:
        return self._polls

    @property
    def stopped(self) -> bool:
        """True once the polling task is no longer running."""
        return self._task is None or self._task.done()

    def start(self) -> None:
        """Launch the polling task."""
        if self._task is not None:
            raise RuntimeError(f"Readiness monitor for {self._name} already started")
        self._task = asyncio.create_task(
            self._poll_loop(), name=f"readiness-{self._name}"
        )

    async def wait(self) -> None:
        """Block until the monitor reaches a terminal state.

        Raises:
            InstanceDiedError: The container stopped before becoming healthy.
            ProbeTimedOutError: The timeout elapsed first.
        """
        await self._done.wait()
        self._raise_for_state()

    async def wait_started(self) -> None:
        """Block until the probe reports anything other than ``starting``."""
        if not self._started.is_set():
            started = asyncio.ensure_future(self._started.wait())
            done = asyncio.ensure_future(self._done.wait())
            try:
                await asyncio.wait({started, done}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                started.cancel()
                done.cancel()
        if not self._started.is_set():
            self._raise_for_state()

    async def stop(self) -> None:
        """Cancel polling and wait for the task to finish."""
        self._cancel.set()
        task = self._task
        if task is None or task.done():
            return
        try:
            # A probe exec can be mid-flight; give it one interval before cancelling.
            await asyncio.wait_for(asyncio.shield(task), timeout=self._interval)
        except TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------

    def _raise_for_state(self) -> None:
        if self._error is not None:
            raise self._error
        if self._state is ReadinessState.DIED:
            raise InstanceDiedError(self._name, self._exit_code, self._last_output)
        if self._state is ReadinessState.TIMED_OUT:
            raise ProbeTimedOutError(self._name, self._timeout, self._last_output)

    def _transition(self, state: ReadinessState) -> None:
        if _ORDER.index(state) <= _ORDER.index(self._state):
            return
        if self._state.is_terminal:
            return
        self._state = state
        if state.is_terminal:
            self._done.set()

    def _notify(self, status: str) -> None:
        logger.info(
            "Status change for %s: %s",
            self._name,
            status,
            extra={
                "event": LogEvent.READINESS_CHANGED,
                "container": self._name,
                "status": status,
            },
        )
        if self._on_change is None:
            return
        try:
            self._on_change(self._name, status)
        except Exception:
            logger.exception("Readiness change callback failed for %s", self._name)

    def _time_out(self) -> None:
        logger.warning(
            "Timed out waiting for %s to be healthy",
            self._name,
            extra={
                "event": LogEvent.READINESS_TIMED_OUT,
                "container": self._name,
                "last_output": self._last_output[-500:],
            },
        )
        self._transition(ReadinessState.TIMED_OUT)

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        self._transition(ReadinessState.PROBING)

        try:
            while not self._cancel.is_set():
                # A hung inspect or probe exec must not outlast the deadline.
                try:
                    state = await asyncio.wait_for(
                        self._runtime.inspect(self._container_id),
                        timeout=deadline - loop.time(),
                    )
                    if state is None or state.is_dead:
                        if state is not None:
                            self._exit_code = state.exit_code
                            self._last_output = state.last_health_output or self._last_output
                        logger.warning(
                            "Container %s stopped before becoming healthy",
                            self._name,
                            extra={
                                "event": LogEvent.CONTAINER_DIED,
                                "container": self._name,
                                "exit_code": self._exit_code,
                            },
                        )
                        self._transition(ReadinessState.DIED)
                        return

                    result = await asyncio.wait_for(
                        self._probe.check(self._runtime, self._container_id, state),
                        timeout=deadline - loop.time(),
                    )
                except TimeoutError:
                    self._time_out()
                    return

                self._polls += 1
                self._last_output = result.output

                if result.status != self._status:
                    self._status = result.status
                    self._notify(result.status)
                    if result.status != STATUS_STARTING:
                        self._started.set()

                if result.healthy:
                    if result.output:
                        logger.debug(
                            "Health output for %s: %s",
                            self._name,
                            result.output,
                            extra={
                                "event": LogEvent.READINESS_PROBED,
                                "container": self._name,
                                "status": result.status,
                            },
                        )
                    self._transition(ReadinessState.HEALTHY)
                    return

                remaining = deadline - loop.time()
                if remaining <= 0:
                    self._time_out()
                    return

                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._cancel.wait(), timeout=min(self._interval, remaining)
                    )
        except Exception as e:
            logger.exception("Readiness polling failed for %s", self._name)
            self._error = e
            self._done.set()
