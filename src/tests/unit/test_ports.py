"""Unit tests for PortAllocator."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from scratchbox.config import PortConfig
from scratchbox.errors import ErrorCode, PortExhaustedError
from scratchbox.ports import PortAllocator


class TestPortAllocator:
    """Tests for PortAllocator."""

    def test_acquire_returns_bindable_port(self) -> None:
        allocator = PortAllocator()

        lease = allocator.acquire()

        assert 0 < lease.port < 65536
        assert lease.port in allocator.allocated

    def test_concurrent_acquire_never_duplicates(self) -> None:
        """1000 concurrent acquisitions yield 1000 distinct ports."""
        allocator = PortAllocator()

        with ThreadPoolExecutor(max_workers=16) as pool:
            ports = list(pool.map(lambda _: allocator.acquire_port(), range(1000)))

        assert len(set(ports)) == 1000
        assert allocator.allocated == frozenset(ports)

    def test_exhausted_after_max_attempts(self) -> None:
        allocator = PortAllocator(PortConfig(max_attempts=10))

        with patch.object(PortAllocator, "_probe_free_port", return_value=40000) as probe:
            assert allocator.acquire_port() == 40000
            probe.reset_mock()

            with pytest.raises(PortExhaustedError) as exc_info:
                allocator.acquire_port()

        assert probe.call_count == 10
        assert exc_info.value.code == ErrorCode.PORT_EXHAUSTED

    def test_retries_past_already_allocated_port(self) -> None:
        allocator = PortAllocator()

        with patch.object(PortAllocator, "_probe_free_port", side_effect=[40000, 40000, 40001]):
            first = allocator.acquire_port()
            second = allocator.acquire_port()

        assert (first, second) == (40000, 40001)

    def test_release_is_ignored_by_default(self) -> None:
        allocator = PortAllocator()

        with patch.object(PortAllocator, "_probe_free_port", return_value=40000):
            allocator.acquire_port()
            allocator.release(40000)

            with pytest.raises(PortExhaustedError):
                allocator.acquire_port()

    def test_release_allows_reuse_when_enabled(self) -> None:
        allocator = PortAllocator(PortConfig(reuse_released=True))

        with patch.object(PortAllocator, "_probe_free_port", return_value=40000):
            allocator.acquire_port()
            allocator.release(40000)

            assert allocator.acquire_port() == 40000
