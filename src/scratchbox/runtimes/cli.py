"""Container runtime backed by the docker command-line client.

Every operation spawns the client with ``asyncio.create_subprocess_exec`` so
nothing blocks the event loop. Archives are streamed into ``docker cp -``
through the subprocess's stdin.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from scratchbox.errors import (
    CreateError,
    ExecFailedError,
    ImagePullError,
    RuntimeUnavailableError,
    StartError,
)
from scratchbox.logging_schema import LogEvent
from scratchbox.runtimes.base import ContainerRuntime, ContainerSpec, ContainerState, ExecResult

if TYPE_CHECKING:
    from scratchbox.config import ScratchboxConfig

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Exit status and decoded output of one client invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        return (self.stderr or self.stdout).strip()


def _seconds(value: float) -> str:
    return f"{value:g}s"


class CliRuntime(ContainerRuntime):
    """Runtime spawning the engine's command-line client."""

    name = "cli"

    def __init__(self, config: ScratchboxConfig) -> None:
        self._config = config
        self._binary = config.docker.cli_binary

    async def _run(
        self,
        *args: str,
        timeout: float | None = None,
        merge_stderr: bool = False,
    ) -> CommandResult:
        """Run one client command and collect its output."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise RuntimeUnavailableError(
                f"{self._binary} command-line client not found", str(e)
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self._config.docker.api_timeout
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return CommandResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
        )

    async def ping(self) -> None:
        result = await self._run("version", "--format", "{{.Server.Version}}")
        if not result.ok:
            raise RuntimeUnavailableError("Container engine unavailable", result.diagnostic)

    async def pull_image(self, ref: str) -> None:
        if self._config.runtime.pull_policy == "missing":
            result = await self._run("image", "inspect", ref)
            if result.ok:
                return

        logger.info("Pulling image: %s", ref)
        result = await self._run("pull", ref, timeout=self._config.docker.image_pull_timeout)
        if not result.ok:
            raise ImagePullError(ref, result.diagnostic)
        logger.info(
            "Pulled image: %s", ref, extra={"event": LogEvent.IMAGE_PULLED, "image": ref}
        )

    def _create_args(self, spec: ContainerSpec) -> list[str]:
        args = ["create", "--name", spec.name]
        for key, value in spec.env.items():
            args += ["-e", f"{key}={value}"]
        for container_port, host_port in spec.ports.items():
            args += ["-p", f"{spec.bind_host}:{host_port}:{container_port}"]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        for bind in spec.binds:
            args += ["-v", bind]
        if spec.tty:
            args.append("--tty")
        if spec.healthcheck:
            test = spec.healthcheck.test
            if test and test[0] in ("CMD", "CMD-SHELL"):
                test = test[1:]
            health_cmd = " ".join(test)
            args += [
                "--health-cmd",
                health_cmd,
                "--health-interval",
                _seconds(spec.healthcheck.interval),
                "--health-timeout",
                _seconds(spec.healthcheck.timeout),
            ]
            if spec.healthcheck.retries:
                args += ["--health-retries", str(spec.healthcheck.retries)]
            if spec.healthcheck.start_period:
                args += ["--health-start-period", _seconds(spec.healthcheck.start_period)]
        args.append(spec.image)
        args += spec.cmd
        return args

    async def create(self, spec: ContainerSpec) -> str:
        result = await self._run(*self._create_args(spec))
        if not result.ok:
            raise CreateError(spec.name, result.diagnostic)
        container_id = result.stdout.strip().splitlines()[-1]
        logger.info(
            "Created container: %s",
            spec.name,
            extra={
                "event": LogEvent.CONTAINER_CREATED,
                "container": spec.name,
                "container_id": container_id,
            },
        )
        return container_id

    async def start(self, container_id: str) -> None:
        result = await self._run("start", container_id)
        if not result.ok:
            raise StartError(container_id, result.diagnostic)
        logger.info(
            "Started container: %s",
            container_id[:12],
            extra={"event": LogEvent.CONTAINER_STARTED, "container": container_id},
        )

    async def stop(self, container_id: str, grace: int) -> None:
        result = await self._run(
            "stop",
            "-t",
            str(grace),
            container_id,
            timeout=grace + self._config.docker.api_timeout,
        )
        if not result.ok:
            if "No such container" in result.diagnostic:
                logger.debug("Container not found: %s", container_id)
                return
            raise RuntimeUnavailableError(f"Failed to stop {container_id}", result.diagnostic)
        logger.info(
            "Stopped container: %s",
            container_id[:12],
            extra={"event": LogEvent.CONTAINER_STOPPED, "container": container_id},
        )

    async def remove(self, container_id: str, force: bool = True) -> None:
        args = ["rm", "-f", container_id] if force else ["rm", container_id]
        result = await self._run(*args)
        if not result.ok:
            if "No such container" in result.diagnostic:
                logger.debug("Container not found: %s", container_id)
                return
            raise RuntimeUnavailableError(f"Failed to remove {container_id}", result.diagnostic)
        logger.info(
            "Removed container: %s",
            container_id[:12],
            extra={"event": LogEvent.CONTAINER_REMOVED, "container": container_id},
        )

    async def inspect(self, container_id: str) -> ContainerState | None:
        result = await self._run("inspect", "--format", "{{json .State}}", container_id)
        if not result.ok:
            if "No such" in result.diagnostic:
                return None
            raise RuntimeUnavailableError(f"Failed to inspect {container_id}", result.diagnostic)

        state = json.loads(result.stdout)
        health = state.get("Health") or {}
        return ContainerState(
            running=state.get("Running", False),
            restarting=state.get("Restarting", False),
            exit_code=state.get("ExitCode"),
            health=health.get("Status"),
            health_log=[entry.get("Output", "") for entry in health.get("Log") or []],
        )

    async def list_by_name_prefix(self, prefix: str) -> list[str]:
        result = await self._run(
            "ps", "--all", "--filter", f"name={prefix}", "--format", "{{.ID}} {{.Names}}"
        )
        if not result.ok:
            raise RuntimeUnavailableError("Failed to list containers", result.diagnostic)

        ids = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            container_id, _, names = line.partition(" ")
            if any(name.startswith(prefix) for name in names.split(",")):
                ids.append(container_id)
        return ids

    async def copy_archive_into(
        self, container_id: str, dest_path: str, archive: AsyncIterable[bytes]
    ) -> None:
        proc = await asyncio.create_subprocess_exec(
            self._binary,
            "cp",
            "-",
            f"{container_id}:{dest_path}",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        assert proc.stdin is not None
        try:
            async for chunk in archive:
                proc.stdin.write(chunk)
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Client exited early; its stderr explains why.
            pass
        except BaseException:
            proc.kill()
            await proc.wait()
            raise
        finally:
            proc.stdin.close()
        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            raise RuntimeUnavailableError(
                f"Failed to copy archive into {container_id}:{dest_path}",
                (stderr or stdout).decode(errors="replace"),
            )
        logger.info(
            "Copied archive into %s:%s",
            container_id[:12],
            dest_path,
            extra={
                "event": LogEvent.ARCHIVE_COPIED,
                "container": container_id,
                "path": dest_path,
            },
        )

    async def exec(
        self, container_id: str, argv: list[str], attach: bool = True
    ) -> ExecResult:
        if not attach:
            result = await self._run("exec", "-d", container_id, *argv)
            if not result.ok:
                raise ExecFailedError(argv, result.returncode, result.diagnostic)
            return ExecResult(argv=argv, attached=False)

        result = await self._run(
            "exec",
            container_id,
            *argv,
            timeout=self._config.docker.exec_timeout,
            merge_stderr=True,
        )
        if not result.ok:
            raise ExecFailedError(argv, result.returncode, result.stdout)
        return ExecResult(
            argv=argv, attached=True, exit_code=result.returncode, output=result.stdout
        )
