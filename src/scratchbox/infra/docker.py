"""Docker Engine API client.

Provides async Docker API access for images, containers and exec sessions.
Supports both Unix socket and TCP connections.
"""

import json
import logging
import struct
from collections.abc import AsyncIterable

import httpx
from pydantic import BaseModel

from scratchbox.config import DockerConfig
from scratchbox.logging_schema import LogEvent

logger = logging.getLogger(__name__)

# Multiplexed attach stream: 1 byte stream type, 3 padding, 4 byte big-endian size.
_FRAME_HEADER = struct.Struct(">BxxxI")


class PullFailedError(Exception):
    """Raised when the engine reports an error inside the pull progress stream."""

    pass


# =============================================================================
# Pydantic Models
# =============================================================================


class HealthConfig(BaseModel):
    """Native health check definition (durations in seconds)."""

    test: list[str]
    interval: float = 5.0
    timeout: float = 60.0
    retries: int = 0
    start_period: float = 0.0

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API format (durations in nanoseconds)."""
        result: dict = {
            "Test": self.test,
            "Interval": int(self.interval * 1e9),
            "Timeout": int(self.timeout * 1e9),
        }
        if self.retries:
            result["Retries"] = self.retries
        if self.start_period:
            result["StartPeriod"] = int(self.start_period * 1e9)
        return result


class HostConfig(BaseModel):
    """Docker HostConfig for container creation."""

    port_bindings: dict[str, int] = {}
    bind_host: str = "0.0.0.0"
    binds: list[str] = []

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API format."""
        result: dict = {
            "PortBindings": {
                container_port: [{"HostIp": self.bind_host, "HostPort": str(host_port)}]
                for container_port, host_port in self.port_bindings.items()
            },
        }
        if self.binds:
            result["Binds"] = self.binds
        return result


class ContainerConfig(BaseModel):
    """Docker container configuration for creation."""

    image: str
    name: str
    cmd: list[str] = []
    env: list[str] = []
    exposed_ports: dict[str, dict] = {}
    healthcheck: HealthConfig | None = None
    tty: bool = False
    labels: dict[str, str] = {}
    host_config: HostConfig = HostConfig()

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API JSON format."""
        result: dict = {
            "Image": self.image,
            "Tty": self.tty,
            "ExposedPorts": self.exposed_ports,
            "HostConfig": self.host_config.to_api(),
        }
        if self.cmd:
            result["Cmd"] = self.cmd
        if self.env:
            result["Env"] = self.env
        if self.healthcheck:
            result["Healthcheck"] = self.healthcheck.to_api()
        if self.labels:
            result["Labels"] = self.labels
        return result


def demux_stream(payload: bytes) -> bytes:
    """Strip the multiplexing headers from a non-TTY attach stream.

    stdout and stderr frames are concatenated in arrival order. Payloads that
    do not start with a valid header (TTY sessions) are returned unchanged.
    """
    if len(payload) < _FRAME_HEADER.size or payload[0] not in (0, 1, 2):
        return payload

    out = bytearray()
    offset = 0
    while offset + _FRAME_HEADER.size <= len(payload):
        _, size = _FRAME_HEADER.unpack_from(payload, offset)
        offset += _FRAME_HEADER.size
        out += payload[offset : offset + size]
        offset += size
    return bytes(out)


# =============================================================================
# Docker Client
# =============================================================================


class DockerClient:
    """Async Docker API client."""

    def __init__(
        self,
        config: DockerConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or DockerConfig()
        self._host = self._config.host
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _create_client(self) -> httpx.AsyncClient:
        """Create a new HTTP client."""
        timeout = self._config.api_timeout
        if self._transport is not None:
            return httpx.AsyncClient(
                transport=self._transport, base_url="http://docker", timeout=timeout
            )
        if self._host.startswith("unix://"):
            socket_path = self._host.replace("unix://", "")
            transport = httpx.AsyncHTTPTransport(uds=socket_path)
            return httpx.AsyncClient(
                transport=transport,
                base_url="http://localhost",
                timeout=timeout,
            )
        base_url = self._host
        if base_url.startswith("tcp://"):
            base_url = base_url.replace("tcp://", "http://")
        return httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @property
    def config(self) -> DockerConfig:
        return self._config

    async def get(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = self._create_client()
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def ping(self) -> None:
        """Check that the engine answers."""
        client = await self.get()
        resp = await client.get("/_ping")
        resp.raise_for_status()


# =============================================================================
# Container API
# =============================================================================


class ContainerAPI:
    """Docker Container API operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def list(self, filters: dict | None = None, include_stopped: bool = True) -> list[dict]:
        """List containers."""
        client = await self._docker.get()
        params: dict = {"all": "true" if include_stopped else "false"}
        if filters:
            params["filters"] = json.dumps(filters)
        resp = await client.get("/containers/json", params=params)
        resp.raise_for_status()
        return resp.json()

    async def inspect(self, name: str) -> dict | None:
        """Inspect a container."""
        client = await self._docker.get()
        resp = await client.get(f"/containers/{name}/json")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def create(self, config: ContainerConfig) -> str:
        """Create a container and return its ID."""
        client = await self._docker.get()
        resp = await client.post(
            "/containers/create",
            params={"name": config.name},
            json=config.to_api(),
        )
        resp.raise_for_status()
        container_id = resp.json()["Id"]
        logger.info(
            "Created container: %s",
            config.name,
            extra={
                "event": LogEvent.CONTAINER_CREATED,
                "container": config.name,
                "container_id": container_id,
            },
        )
        return container_id

    async def start(self, name: str) -> None:
        """Start a container."""
        client = await self._docker.get()
        resp = await client.post(f"/containers/{name}/start")
        if resp.status_code not in (204, 304):
            resp.raise_for_status()
        logger.info(
            "Started container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_STARTED, "container": name},
        )

    async def stop(self, name: str, timeout: int = 10) -> None:
        """Stop a container."""
        client = await self._docker.get()
        resp = await client.post(
            f"/containers/{name}/stop",
            params={"t": str(timeout)},
            timeout=timeout + self._docker.config.api_timeout,
        )
        if resp.status_code not in (204, 304, 404):  # 404 = not found, ok
            resp.raise_for_status()
        logger.info(
            "Stopped container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_STOPPED, "container": name},
        )

    async def remove(self, name: str, force: bool = True) -> None:
        """Remove a container."""
        client = await self._docker.get()
        resp = await client.delete(
            f"/containers/{name}", params={"force": "true" if force else "false"}
        )
        if resp.status_code == 404:
            logger.debug("Container not found: %s", name)
            return
        resp.raise_for_status()
        logger.info(
            "Removed container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_REMOVED, "container": name},
        )

    async def put_archive(
        self, name: str, path: str, data: bytes | AsyncIterable[bytes]
    ) -> None:
        """Put tar archive into container.

        Args:
            name: Container name or ID
            path: Destination directory inside container (must exist)
            data: Tar archive data, whole or as a stream of chunks
        """
        client = await self._docker.get()
        resp = await client.put(
            f"/containers/{name}/archive",
            params={"path": path},
            content=data,
            headers={"Content-Type": "application/x-tar"},
        )
        resp.raise_for_status()


# =============================================================================
# Exec API
# =============================================================================


class ExecAPI:
    """Docker exec session operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def create(self, name: str, cmd: list[str], attach: bool = True) -> str:
        """Create an exec session and return its ID."""
        client = await self._docker.get()
        resp = await client.post(
            f"/containers/{name}/exec",
            json={
                "Cmd": cmd,
                "AttachStdout": attach,
                "AttachStderr": attach,
                "Tty": False,
            },
        )
        resp.raise_for_status()
        return resp.json()["Id"]

    async def start(
        self, exec_id: str, detach: bool = False, timeout: float | None = None
    ) -> bytes:
        """Start an exec session.

        Attached sessions block until the command exits and return its
        combined stdout/stderr; detached sessions return immediately.
        """
        client = await self._docker.get()
        resp = await client.post(
            f"/exec/{exec_id}/start",
            json={"Detach": detach, "Tty": False},
            timeout=timeout,
        )
        resp.raise_for_status()
        if detach:
            return b""
        return demux_stream(resp.content)

    async def inspect(self, exec_id: str) -> dict:
        client = await self._docker.get()
        resp = await client.get(f"/exec/{exec_id}/json")
        resp.raise_for_status()
        return resp.json()


# =============================================================================
# Image API
# =============================================================================


class ImageAPI:
    """Docker Image API operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def exists(self, image_ref: str) -> bool:
        """Check if image exists locally."""
        client = await self._docker.get()
        resp = await client.get(f"/images/{image_ref}/json")
        return resp.status_code == 200

    async def pull(self, image_ref: str) -> None:
        """Pull image from registry.

        The engine reports pull failures inside the progress stream with a
        200 status, so the body is scanned for an ``error`` message.
        """
        client = await self._docker.get()

        image, tag = split_image_ref(image_ref)
        logger.info("Pulling image: %s:%s", image, tag)

        resp = await client.post(
            "/images/create",
            params={"fromImage": image, "tag": tag},
            timeout=self._docker.config.image_pull_timeout,
        )
        resp.raise_for_status()
        for line in resp.text.splitlines():
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except ValueError:
                continue
            if isinstance(message, dict) and message.get("error"):
                raise PullFailedError(message["error"])
        logger.info(
            "Pulled image: %s:%s",
            image,
            tag,
            extra={"event": LogEvent.IMAGE_PULLED, "image": image_ref},
        )

    async def ensure(self, image_ref: str) -> None:
        """Ensure image exists locally, pull if not."""
        if not await self.exists(image_ref):
            await self.pull(image_ref)


def split_image_ref(image_ref: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` or ``repo@digest`` into ``fromImage`` and ``tag``.

    Registry ports (``host:5000/x``) stay part of the repository.
    """
    repo, at, digest = image_ref.partition("@")
    if at:
        return repo, digest
    name, _, tag = image_ref.rpartition(":")
    if name and "/" not in tag:
        return name, tag
    return image_ref, "latest"
