"""Scratchbox configuration using pydantic-settings.

Configuration hierarchy:
- DockerConfig: Container engine connection and backend selection
- RuntimeConfig: Naming and container lifecycle defaults
- ReadinessConfig: Readiness polling defaults
- CleanupConfig: Orphan sweep behavior
- PortConfig: Host port allocation
- LoggingConfig: Logging behavior
- ScratchboxConfig: Main config aggregating all sub-configs

Environment variable prefix: SCRATCHBOX_
Example: SCRATCHBOX_DOCKER_BACKEND=cli
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DockerConfig(BaseSettings):
    """Container engine configuration.

    backend selects how the engine is driven:
      api -> Docker Engine HTTP API (unix socket or TCP)
      cli -> the docker command-line client as a subprocess
    """

    model_config = SettingsConfigDict(env_prefix="SCRATCHBOX_DOCKER_")

    backend: Literal["api", "cli"] = Field(default="api", description="Engine backend")

    # Connection
    host: str = Field(
        default="unix:///var/run/docker.sock",
        description="Docker daemon socket or TCP address",
    )
    cli_binary: str = Field(default="docker", description="Engine command-line client")

    # Timeouts
    api_timeout: float = Field(default=30.0, description="Engine API call timeout (seconds)")
    image_pull_timeout: float = Field(default=600.0, description="Image pull timeout (seconds)")
    exec_timeout: float = Field(
        default=600.0,
        description="Upper bound for an attached exec to return (seconds)",
    )


class RuntimeConfig(BaseSettings):
    """Instance lifecycle defaults."""

    model_config = SettingsConfigDict(env_prefix="SCRATCHBOX_RUNTIME_")

    # Resource naming
    resource_prefix: str = Field(
        default="scratchbox-",
        description="Reserved prefix for every container this library creates",
    )

    stop_grace: int = Field(default=30, description="Grace period for stop (seconds)")
    pull_policy: Literal["always", "missing"] = Field(
        default="missing",
        description="Pull every time, or only when the image is not present locally",
    )
    bind_host: str = Field(default="0.0.0.0", description="Host IP for published ports")


class ReadinessConfig(BaseSettings):
    """Readiness probing defaults."""

    model_config = SettingsConfigDict(env_prefix="SCRATCHBOX_READINESS_")

    interval: float = Field(default=1.0, description="Poll interval (seconds)")
    timeout: float = Field(default=60.0, description="Absolute readiness timeout (seconds)")


class CleanupConfig(BaseSettings):
    """Orphan sweep configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRATCHBOX_CLEANUP_")

    interval: float = Field(default=1.0, description="Poll interval while converging (seconds)")
    timeout: float = Field(default=60.0, description="Time allowed to converge (seconds)")
    sweep_on_start: bool = Field(default=True, description="Sweep orphans when started")
    handle_signals: bool = Field(
        default=True,
        description="Sweep on SIGINT/SIGTERM before exiting",
    )


class PortConfig(BaseSettings):
    """Host port allocation."""

    model_config = SettingsConfigDict(env_prefix="SCRATCHBOX_PORTS_")

    host: str = Field(default="127.0.0.1", description="Interface used to probe free ports")
    max_attempts: int = Field(default=10, description="Attempts before giving up")
    reuse_released: bool = Field(
        default=False,
        description="Allow ports released at teardown to be handed out again",
    )


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Supports both text and JSON formats:
    - text: Human-readable for local runs
    - json: Structured logging for CI log collection
    """

    model_config = SettingsConfigDict(env_prefix="SCRATCHBOX_LOGGING_")

    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="text", description="Log format (text, json)")
    service_name: str = Field(default="scratchbox", description="Service identifier in logs")


class ScratchboxConfig(BaseSettings):
    """Main configuration aggregating all sub-configs.

    Environment variable prefix: SCRATCHBOX_
    Sub-configs use their own prefixes (SCRATCHBOX_DOCKER_, SCRATCHBOX_PORTS_, etc.)
    """

    model_config = SettingsConfigDict(
        env_prefix="SCRATCHBOX_",
        env_nested_delimiter="__",
    )

    docker: DockerConfig = Field(default_factory=DockerConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    ports: PortConfig = Field(default_factory=PortConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


@lru_cache
def get_config() -> ScratchboxConfig:
    """Get cached configuration singleton."""
    return ScratchboxConfig()
