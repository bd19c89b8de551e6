"""Container engine infrastructure layer."""

from scratchbox.infra.docker import (
    ContainerAPI,
    ContainerConfig,
    DockerClient,
    ExecAPI,
    HealthConfig,
    HostConfig,
    ImageAPI,
    PullFailedError,
    demux_stream,
)

__all__ = [
    "ContainerAPI",
    "ContainerConfig",
    "DockerClient",
    "ExecAPI",
    "HealthConfig",
    "HostConfig",
    "ImageAPI",
    "PullFailedError",
    "demux_stream",
]
