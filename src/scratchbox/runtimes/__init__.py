"""Container runtimes.

One interface, two backends. The backend is picked once, here, from
configuration.
"""

from scratchbox.config import ScratchboxConfig, get_config
from scratchbox.runtimes.api import ApiRuntime
from scratchbox.runtimes.base import ContainerRuntime, ContainerSpec, ContainerState, ExecResult
from scratchbox.runtimes.cli import CliRuntime


def create_runtime(config: ScratchboxConfig | None = None) -> ContainerRuntime:
    """Build the runtime selected by ``config.docker.backend``."""
    config = config or get_config()
    if config.docker.backend == "cli":
        return CliRuntime(config)
    return ApiRuntime(config)


__all__ = [
    "ApiRuntime",
    "CliRuntime",
    "ContainerRuntime",
    "ContainerSpec",
    "ContainerState",
    "ExecResult",
    "create_runtime",
]
