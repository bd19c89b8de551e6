"""Unit tests for ReadinessMonitor and probes."""

import asyncio

import pytest

from scratchbox.errors import ExecFailedError, InstanceDiedError, ProbeTimedOutError
from scratchbox.readiness import (
    CommandProbe,
    HealthStatusProbe,
    Probe,
    ProbeResult,
    ReadinessMonitor,
    ReadinessState,
)
from scratchbox.runtimes.base import ContainerRuntime, ContainerState

from .fakes import FakeRuntime


def _monitor(runtime: FakeRuntime, container_id: str, **kwargs) -> ReadinessMonitor:
    kwargs.setdefault("interval", 0.01)
    kwargs.setdefault("timeout", 1.0)
    return ReadinessMonitor(runtime, container_id, "scratchbox-test", **kwargs)


class StalledCheck(Probe):
    """Health check that never returns on its own."""

    def __init__(self) -> None:
        self.calls = 0

    async def check(
        self, runtime: ContainerRuntime, container_id: str, state: ContainerState
    ) -> ProbeResult:
        self.calls += 1
        await asyncio.sleep(5)
        return ProbeResult("healthy")


class TestHealthStatusProbe:
    """Tests for HealthStatusProbe."""

    async def test_no_health_check_is_healthy(self, fake_runtime: FakeRuntime) -> None:
        result = await HealthStatusProbe().check(
            fake_runtime, "c1", ContainerState(running=True)
        )

        assert result.healthy

    async def test_reports_engine_status(self, fake_runtime: FakeRuntime) -> None:
        state = ContainerState(running=True, health="unhealthy", health_log=["a", "refused"])

        result = await HealthStatusProbe().check(fake_runtime, "c1", state)

        assert result.status == "unhealthy"
        assert result.output == "refused"


class TestCommandProbe:
    """Tests for CommandProbe."""

    async def test_exit_zero_is_healthy(self, fake_runtime: FakeRuntime) -> None:
        fake_runtime.exec_handler = lambda argv: "PONG"

        result = await CommandProbe(["redis-cli", "ping"]).check(
            fake_runtime, "c1", ContainerState(running=True)
        )

        assert result.healthy
        assert result.output == "PONG"

    async def test_failure_output_is_kept(self, fake_runtime: FakeRuntime) -> None:
        fake_runtime.exec_handler = lambda argv: ExecFailedError(argv, 1, "connection refused")

        result = await CommandProbe.shell("psql -c 'select 1'").check(
            fake_runtime, "c1", ContainerState(running=True)
        )

        assert result.status == "unhealthy"
        assert result.output == "connection refused"
        assert fake_runtime.calls[-1] == ("exec", ("/bin/sh", "-c", "psql -c 'select 1'"), True)


class TestReadinessMonitor:
    """Tests for ReadinessMonitor."""

    async def test_healthy_on_third_poll(self, fake_runtime: FakeRuntime) -> None:
        """Probe fails twice then succeeds: HEALTHY after exactly three polls."""
        container_id = fake_runtime.add_container("scratchbox-test")
        not_yet = ExecFailedError(["check"], 1, "not yet")
        attempts = iter([not_yet, not_yet, "ok"])
        fake_runtime.exec_handler = lambda argv: next(attempts)
        monitor = _monitor(fake_runtime, container_id, probe=CommandProbe(["check"]))

        monitor.start()
        await asyncio.wait_for(monitor.wait(), timeout=2)

        assert monitor.state is ReadinessState.HEALTHY
        assert monitor.polls == 3

    async def test_notifies_on_status_change_only(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        fake_runtime.health = ["starting", "starting", "starting", "healthy"]
        changes: list[tuple[str, str]] = []
        monitor = _monitor(
            fake_runtime,
            container_id,
            on_change=lambda name, status: changes.append((name, status)),
        )

        monitor.start()
        await monitor.wait()

        assert changes == [("scratchbox-test", "starting"), ("scratchbox-test", "healthy")]

    async def test_failing_callback_does_not_stop_polling(
        self, fake_runtime: FakeRuntime
    ) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        fake_runtime.health = ["starting", "healthy"]

        def explode(name: str, status: str) -> None:
            raise RuntimeError("listener broke")

        monitor = _monitor(fake_runtime, container_id, on_change=explode)
        monitor.start()
        await monitor.wait()

        assert monitor.state is ReadinessState.HEALTHY

    async def test_died_short_circuits(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test", running=False)
        fake_runtime.containers[container_id]["exit_code"] = 137
        monitor = _monitor(fake_runtime, container_id, timeout=60.0)

        monitor.start()
        with pytest.raises(InstanceDiedError) as exc_info:
            await asyncio.wait_for(monitor.wait(), timeout=1)

        assert monitor.state is ReadinessState.DIED
        assert monitor.polls == 0
        assert exc_info.value.exit_code == 137

    async def test_missing_container_counts_as_died(self, fake_runtime: FakeRuntime) -> None:
        monitor = _monitor(fake_runtime, "gone")

        monitor.start()
        with pytest.raises(InstanceDiedError):
            await monitor.wait()

    async def test_timeout_carries_last_output(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        fake_runtime.exec_handler = lambda argv: ExecFailedError(argv, 2, "connection refused")
        monitor = _monitor(
            fake_runtime, container_id, probe=CommandProbe(["check"]), timeout=0.05
        )

        monitor.start()
        with pytest.raises(ProbeTimedOutError) as exc_info:
            await asyncio.wait_for(monitor.wait(), timeout=2)

        assert monitor.state is ReadinessState.TIMED_OUT
        assert exc_info.value.last_output == "connection refused"
        assert "connection refused" in str(exc_info.value)

    async def test_state_never_moves_backwards(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        monitor = _monitor(fake_runtime, container_id)
        monitor.start()
        await monitor.wait()

        monitor._transition(ReadinessState.PROBING)
        monitor._transition(ReadinessState.TIMED_OUT)

        assert monitor.state is ReadinessState.HEALTHY

    async def test_wait_started_returns_before_healthy(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        fake_runtime.health = ["starting", "unhealthy"]
        monitor = _monitor(fake_runtime, container_id, interval=0.01, timeout=5.0)

        monitor.start()
        await asyncio.wait_for(monitor.wait_started(), timeout=1)

        assert monitor.status == "unhealthy"
        assert monitor.state is ReadinessState.PROBING
        await monitor.stop()

    async def test_wait_started_raises_when_died(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test", running=False)
        monitor = _monitor(fake_runtime, container_id)

        monitor.start()
        with pytest.raises(InstanceDiedError):
            await asyncio.wait_for(monitor.wait_started(), timeout=1)

    async def test_stop_ends_polling(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        fake_runtime.health = ["starting"]
        monitor = _monitor(fake_runtime, container_id, interval=10.0, timeout=60.0)

        monitor.start()
        await asyncio.sleep(0.01)
        await asyncio.wait_for(monitor.stop(), timeout=1)
        inspected = fake_runtime.inspect_count
        await asyncio.sleep(0.05)

        assert monitor.stopped
        assert fake_runtime.inspect_count == inspected

    async def test_stop_before_start_is_noop(self, fake_runtime: FakeRuntime) -> None:
        monitor = _monitor(fake_runtime, "c1")

        await monitor.stop()

        assert monitor.stopped

    async def test_start_twice_rejected(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        monitor = _monitor(fake_runtime, container_id)
        monitor.start()

        with pytest.raises(RuntimeError):
            monitor.start()
        await monitor.stop()

    async def test_timeout_bounds_a_stalled_health_check(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        check = StalledCheck()
        monitor = _monitor(fake_runtime, container_id, probe=check, timeout=0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()

        monitor.start()
        with pytest.raises(ProbeTimedOutError):
            await asyncio.wait_for(monitor.wait(), timeout=2)

        assert loop.time() - started < 1.0
        assert check.calls == 1
        assert monitor.state is ReadinessState.TIMED_OUT
        assert monitor.polls == 0
        await monitor.stop()
        assert monitor.stopped

    async def test_timeout_bounds_a_stalled_inspect(self, fake_runtime: FakeRuntime) -> None:
        container_id = fake_runtime.add_container("scratchbox-test")
        inspect = fake_runtime.inspect

        async def slow_inspect(cid: str) -> ContainerState | None:
            await asyncio.sleep(5)
            return await inspect(cid)

        fake_runtime.inspect = slow_inspect  # type: ignore[method-assign]
        monitor = _monitor(fake_runtime, container_id, timeout=0.1)

        monitor.start()
        with pytest.raises(ProbeTimedOutError):
            await asyncio.wait_for(monitor.wait(), timeout=2)

        assert monitor.state is ReadinessState.TIMED_OUT
