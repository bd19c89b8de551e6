"""Fixtures for scratchbox unit tests."""

from unittest.mock import AsyncMock

import pytest

from scratchbox.cleanup import CleanupRegistry
from scratchbox.config import (
    CleanupConfig,
    PortConfig,
    ReadinessConfig,
    RuntimeConfig,
    ScratchboxConfig,
)
from scratchbox.lifecycle import LifecycleManager
from scratchbox.naming import ResourceNaming
from scratchbox.ports import PortAllocator
from scratchbox.runtimes.base import ContainerRuntime

from .fakes import FakeRuntime


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def test_config() -> ScratchboxConfig:
    """Config with short intervals so unit tests run fast."""
    return ScratchboxConfig(
        runtime=RuntimeConfig(resource_prefix="scratchbox-", stop_grace=3),
        readiness=ReadinessConfig(interval=0.01, timeout=1.0),
        cleanup=CleanupConfig(
            interval=0.01, timeout=0.2, sweep_on_start=True, handle_signals=False
        ),
        ports=PortConfig(),
    )


@pytest.fixture
def naming(test_config: ScratchboxConfig) -> ResourceNaming:
    return ResourceNaming(test_config)


@pytest.fixture
def port_allocator(test_config: ScratchboxConfig) -> PortAllocator:
    return PortAllocator(test_config.ports)


@pytest.fixture
def cleanup_registry(
    fake_runtime: FakeRuntime,
    naming: ResourceNaming,
    test_config: ScratchboxConfig,
    tmp_path,
) -> CleanupRegistry:
    return CleanupRegistry(fake_runtime, naming, test_config.cleanup, temp_dir=tmp_path)


@pytest.fixture
def manager(
    fake_runtime: FakeRuntime,
    port_allocator: PortAllocator,
    cleanup_registry: CleanupRegistry,
    test_config: ScratchboxConfig,
    naming: ResourceNaming,
) -> LifecycleManager:
    return LifecycleManager(
        fake_runtime,
        port_allocator,
        cleanup_registry,
        config=test_config,
        naming=naming,
    )


@pytest.fixture
def mock_runtime() -> AsyncMock:
    """AsyncMock ContainerRuntime for call-level assertions."""
    runtime = AsyncMock(spec=ContainerRuntime)
    runtime.name = "mock"
    runtime.list_by_name_prefix = AsyncMock(return_value=[])
    runtime.inspect = AsyncMock(return_value=None)
    return runtime
