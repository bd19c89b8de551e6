"""Command execution inside running containers."""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import TYPE_CHECKING

from scratchbox.errors import ExecFailedError
from scratchbox.logging_schema import LogEvent

if TYPE_CHECKING:
    from scratchbox.runtimes.base import ContainerRuntime

logger = logging.getLogger(__name__)


class CommandExecutor:
    """Runs setup steps and long-running processes in an instance.

    ``run`` blocks until the command exits and raises ExecFailedError with
    the captured output on failure. ``start`` dispatches a detached process
    and never observes its outcome; readiness probing does that.
    """

    def __init__(self, runtime: ContainerRuntime) -> None:
        self._runtime = runtime

    async def run(self, container_id: str, argv: list[str]) -> str:
        """Run an attached command and return its combined output."""
        try:
            result = await self._runtime.exec(container_id, argv, attach=True)
        except ExecFailedError as e:
            logger.warning(
                "Command failed in %s: %s",
                container_id[:12],
                shlex.join(argv),
                extra={
                    "event": LogEvent.EXEC_FAILED,
                    "container": container_id,
                    "command": shlex.join(argv),
                    "exit_code": e.exit_code,
                },
            )
            raise

        logger.debug(
            "Command completed in %s: %s",
            container_id[:12],
            shlex.join(argv),
            extra={
                "event": LogEvent.EXEC_COMPLETED,
                "container": container_id,
                "command": shlex.join(argv),
            },
        )
        return result.output

    async def run_shell(self, container_id: str, script: str, shell: str = "/bin/sh") -> str:
        return await self.run(container_id, [shell, "-c", script])

    async def start(self, container_id: str, argv: list[str]) -> None:
        """Launch a detached command (e.g. an application binary)."""
        await self._runtime.exec(container_id, argv, attach=False)
        logger.info(
            "Dispatched detached command in %s: %s",
            container_id[:12],
            shlex.join(argv),
            extra={
                "event": LogEvent.EXEC_DISPATCHED,
                "container": container_id,
                "command": shlex.join(argv),
            },
        )

    async def wait_until(
        self,
        container_id: str,
        argv: list[str],
        timeout: float,
        interval: float = 1.0,
        label: str | None = None,
    ) -> str:
        """Retry ``argv`` inside the container until it exits 0.

        Raises the last ExecFailedError once ``timeout`` has elapsed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        what = label or shlex.join(argv)

        while True:
            try:
                result = await self._runtime.exec(container_id, argv, attach=True)
                return result.output
            except ExecFailedError:
                if loop.time() + interval > deadline:
                    raise
                logger.debug(
                    "Waiting for %s to be up",
                    what,
                    extra={
                        "event": LogEvent.EXEC_RETRYING,
                        "container": container_id,
                        "command": what,
                    },
                )
                await asyncio.sleep(interval)
