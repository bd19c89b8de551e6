"""Ephemeral containers for integration tests."""

from scratchbox.archive import ArchiveEntry, ArchiveStream, ArchiveTransfer
from scratchbox.cleanup import CleanupRegistry
from scratchbox.config import ScratchboxConfig, get_config
from scratchbox.environment import Environment
from scratchbox.errors import (
    ArchiveBuildError,
    CleanupError,
    CreateError,
    ErrorCode,
    ExecFailedError,
    ImagePullError,
    InstanceDiedError,
    PortExhaustedError,
    ProbeTimedOutError,
    RuntimeUnavailableError,
    ScratchboxError,
    StartError,
)
from scratchbox.executor import CommandExecutor
from scratchbox.infra.docker import HealthConfig
from scratchbox.initializer import ConcurrentInitializer
from scratchbox.lifecycle import (
    FileInjection,
    Instance,
    InstancePhase,
    InstanceSpec,
    LifecycleManager,
)
from scratchbox.logging import setup_logging
from scratchbox.ports import PortAllocator, PortLease
from scratchbox.readiness import (
    CommandProbe,
    HealthStatusProbe,
    ReadinessMonitor,
    ReadinessState,
)
from scratchbox.runtimes import ContainerRuntime, create_runtime

__all__ = [
    "ArchiveBuildError",
    "ArchiveEntry",
    "ArchiveStream",
    "ArchiveTransfer",
    "CleanupError",
    "CleanupRegistry",
    "CommandExecutor",
    "CommandProbe",
    "ConcurrentInitializer",
    "ContainerRuntime",
    "CreateError",
    "Environment",
    "ErrorCode",
    "ExecFailedError",
    "FileInjection",
    "HealthConfig",
    "HealthStatusProbe",
    "ImagePullError",
    "Instance",
    "InstanceDiedError",
    "InstancePhase",
    "InstanceSpec",
    "LifecycleManager",
    "PortAllocator",
    "PortExhaustedError",
    "PortLease",
    "ProbeTimedOutError",
    "ReadinessMonitor",
    "ReadinessState",
    "RuntimeUnavailableError",
    "ScratchboxConfig",
    "ScratchboxError",
    "StartError",
    "create_runtime",
    "get_config",
    "setup_logging",
]
