"""Container runtime backed by the Docker Engine HTTP API."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterator
from typing import TYPE_CHECKING

import httpx

from scratchbox.errors import (
    CreateError,
    ExecFailedError,
    ImagePullError,
    RuntimeUnavailableError,
    StartError,
)
from scratchbox.infra.docker import (
    ContainerAPI,
    ContainerConfig,
    DockerClient,
    ExecAPI,
    HostConfig,
    ImageAPI,
    PullFailedError,
)
from scratchbox.logging_schema import LogEvent
from scratchbox.runtimes.base import ContainerRuntime, ContainerSpec, ContainerState, ExecResult

if TYPE_CHECKING:
    from scratchbox.config import ScratchboxConfig

logger = logging.getLogger(__name__)


def _engine_message(exc: httpx.HTTPStatusError) -> str:
    """Pull the engine's ``{"message": ...}`` out of an error response."""
    try:
        data = exc.response.json()
    except (ValueError, httpx.ResponseNotRead):
        return str(exc)
    if isinstance(data, dict) and data.get("message"):
        return data["message"]
    return str(exc)


@contextlib.contextmanager
def _engine_errors(message: str) -> Iterator[None]:
    """Translate engine failures into RuntimeUnavailableError."""
    try:
        yield
    except httpx.HTTPStatusError as e:
        raise RuntimeUnavailableError(message, _engine_message(e)) from e
    except httpx.TransportError as e:
        raise RuntimeUnavailableError(message, str(e)) from e


class ApiRuntime(ContainerRuntime):
    """Runtime talking to the engine's native control API."""

    name = "api"

    def __init__(
        self,
        config: ScratchboxConfig,
        client: DockerClient | None = None,
        containers: ContainerAPI | None = None,
        images: ImageAPI | None = None,
        execs: ExecAPI | None = None,
    ) -> None:
        self._config = config
        self._client = client or DockerClient(config.docker)
        self._containers = containers or ContainerAPI(self._client)
        self._images = images or ImageAPI(self._client)
        self._execs = execs or ExecAPI(self._client)

    async def ping(self) -> None:
        with _engine_errors("Container engine unavailable"):
            await self._client.ping()

    async def pull_image(self, ref: str) -> None:
        try:
            if self._config.runtime.pull_policy == "missing":
                await self._images.ensure(ref)
            else:
                await self._images.pull(ref)
        except httpx.HTTPStatusError as e:
            raise ImagePullError(ref, _engine_message(e)) from e
        except PullFailedError as e:
            raise ImagePullError(ref, str(e)) from e
        except httpx.TransportError as e:
            raise RuntimeUnavailableError(diagnostic=str(e)) from e

    async def create(self, spec: ContainerSpec) -> str:
        config = ContainerConfig(
            image=spec.image,
            name=spec.name,
            cmd=spec.cmd,
            env=spec.env_list,
            exposed_ports={port: {} for port in spec.ports},
            healthcheck=spec.healthcheck,
            tty=spec.tty,
            labels=spec.labels,
            host_config=HostConfig(
                port_bindings=spec.ports,
                bind_host=spec.bind_host,
                binds=spec.binds,
            ),
        )
        try:
            return await self._containers.create(config)
        except httpx.HTTPStatusError as e:
            raise CreateError(spec.name, _engine_message(e)) from e
        except httpx.TransportError as e:
            raise RuntimeUnavailableError(diagnostic=str(e)) from e

    async def start(self, container_id: str) -> None:
        try:
            await self._containers.start(container_id)
        except httpx.HTTPStatusError as e:
            raise StartError(container_id, _engine_message(e)) from e
        except httpx.TransportError as e:
            raise RuntimeUnavailableError(diagnostic=str(e)) from e

    async def stop(self, container_id: str, grace: int) -> None:
        with _engine_errors(f"Failed to stop {container_id}"):
            await self._containers.stop(container_id, timeout=grace)

    async def remove(self, container_id: str, force: bool = True) -> None:
        with _engine_errors(f"Failed to remove {container_id}"):
            await self._containers.remove(container_id, force=force)

    async def inspect(self, container_id: str) -> ContainerState | None:
        with _engine_errors(f"Failed to inspect {container_id}"):
            data = await self._containers.inspect(container_id)
        if data is None:
            return None

        state = data.get("State", {})
        health = state.get("Health") or {}
        return ContainerState(
            running=state.get("Running", False),
            restarting=state.get("Restarting", False),
            exit_code=state.get("ExitCode"),
            health=health.get("Status"),
            health_log=[entry.get("Output", "") for entry in health.get("Log") or []],
        )

    async def list_by_name_prefix(self, prefix: str) -> list[str]:
        # The engine's name filter is a substring match; narrow it to a true prefix.
        with _engine_errors("Failed to list containers"):
            containers = await self._containers.list(filters={"name": [prefix]})

        results = []
        for container in containers:
            names = [n.lstrip("/") for n in container.get("Names", [])]
            if any(name.startswith(prefix) for name in names):
                results.append(container["Id"])
        return results

    async def copy_archive_into(
        self, container_id: str, dest_path: str, archive: AsyncIterable[bytes]
    ) -> None:
        async def chunks() -> AsyncIterator[bytes]:
            # AsyncClient rejects bodies that are also sync-iterable.
            async for chunk in archive:
                yield chunk

        with _engine_errors(f"Failed to copy archive into {container_id}:{dest_path}"):
            await self._containers.put_archive(container_id, dest_path, chunks())
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
        try:
            exec_id = await self._execs.create(container_id, argv, attach=attach)
            if not attach:
                await self._execs.start(exec_id, detach=True)
                return ExecResult(argv=argv, attached=False)

            raw = await self._execs.start(exec_id, timeout=self._config.docker.exec_timeout)
            inspect = await self._execs.inspect(exec_id)
        except httpx.HTTPStatusError as e:
            # 409 when the container stopped running, 404 when it is gone.
            raise ExecFailedError(argv, None, _engine_message(e)) from e
        except httpx.TransportError as e:
            raise RuntimeUnavailableError(diagnostic=str(e)) from e

        output = raw.decode(errors="replace")
        exit_code = inspect.get("ExitCode")
        if exit_code != 0:
            raise ExecFailedError(argv, exit_code, output)
        return ExecResult(argv=argv, attached=True, exit_code=exit_code, output=output)

    async def close(self) -> None:
        await self._client.close()
