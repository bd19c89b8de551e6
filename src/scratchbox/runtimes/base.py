"""Container runtime interface.

This is the single interface the lifecycle engine uses to drive the
container engine. Backends (engine API, command-line client) are chosen when
the runtime is constructed; calling code never checks which one it has.

Design principles:
- Containers are addressed by the ID returned from create()
- stop()/remove() of an absent container is a no-op
- Engine failures surface as scratchbox.errors exceptions
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterable

from pydantic import BaseModel

from scratchbox.infra.docker import HealthConfig


# =============================================================================
# Models
# =============================================================================


class ContainerSpec(BaseModel):
    """Everything needed to create one container."""

    name: str
    image: str
    cmd: list[str] = []
    env: dict[str, str] = {}
    # "5432/tcp" -> host port
    ports: dict[str, int] = {}
    healthcheck: HealthConfig | None = None
    tty: bool = False
    labels: dict[str, str] = {}
    binds: list[str] = []
    bind_host: str = "0.0.0.0"

    model_config = {"frozen": True}

    @property
    def env_list(self) -> list[str]:
        return [f"{key}={value}" for key, value in self.env.items()]


class ContainerState(BaseModel):
    """Observed container state."""

    running: bool
    restarting: bool = False
    exit_code: int | None = None
    # None when the container has no native health check
    health: str | None = None
    health_log: list[str] = []

    model_config = {"frozen": True}

    @property
    def is_dead(self) -> bool:
        """Stopped for good: not running and not about to restart."""
        return not self.running and not self.restarting

    @property
    def last_health_output(self) -> str:
        return self.health_log[-1] if self.health_log else ""


class ExecResult(BaseModel):
    """Outcome of one exec request.

    exit_code is None for detached commands, whose outcome is never observed.
    """

    argv: list[str]
    attached: bool
    exit_code: int | None = None
    output: str = ""

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# =============================================================================
# Interface
# =============================================================================


class ContainerRuntime(ABC):
    """Capability set over the container engine."""

    name: str = "abstract"

    @abstractmethod
    async def ping(self) -> None:
        """Check that the engine answers.

        Raises:
            RuntimeUnavailableError: The engine cannot be reached.
        """
        ...

    @abstractmethod
    async def pull_image(self, ref: str) -> None:
        """Make the image available locally.

        Raises:
            ImagePullError: Registry or engine refused the pull.
        """
        ...

    @abstractmethod
    async def create(self, spec: ContainerSpec) -> str:
        """Create a container and return its ID.

        Raises:
            CreateError: Engine refused the container definition.
        """
        ...

    @abstractmethod
    async def start(self, container_id: str) -> None:
        """Start a created container.

        Raises:
            StartError: Engine could not start the container.
        """
        ...

    @abstractmethod
    async def stop(self, container_id: str, grace: int) -> None:
        """Stop a container, killing it after ``grace`` seconds."""
        ...

    @abstractmethod
    async def remove(self, container_id: str, force: bool = True) -> None:
        """Remove a container."""
        ...

    @abstractmethod
    async def inspect(self, container_id: str) -> ContainerState | None:
        """Observe container state, None if the container does not exist."""
        ...

    @abstractmethod
    async def list_by_name_prefix(self, prefix: str) -> list[str]:
        """IDs of all containers (any state) whose name starts with prefix."""
        ...

    @abstractmethod
    async def copy_archive_into(
        self, container_id: str, dest_path: str, archive: AsyncIterable[bytes]
    ) -> None:
        """Extract a tar stream into ``dest_path`` inside the container."""
        ...

    @abstractmethod
    async def exec(
        self, container_id: str, argv: list[str], attach: bool = True
    ) -> ExecResult:
        """Run a command inside the container.

        Attached: blocks until exit and raises ExecFailedError (with the
        combined output) on a non-zero exit code.
        Detached: returns as soon as the command has been dispatched.
        """
        ...

    async def close(self) -> None:
        """Release engine connections."""
        return None
