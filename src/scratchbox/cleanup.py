"""Orphan cleanup.

Containers left behind by a crashed or interrupted run carry the reserved
name prefix, so they can be found and force-removed at the next start, or
on SIGINT/SIGTERM before the process exits.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from scratchbox.config import CleanupConfig
from scratchbox.errors import CleanupError
from scratchbox.logging_schema import LogEvent

if TYPE_CHECKING:
    from scratchbox.naming import ResourceNaming
    from scratchbox.runtimes.base import ContainerRuntime

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CleanupRegistry:
    """Tracks live instances and removes everything carrying the prefix."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        naming: ResourceNaming,
        config: CleanupConfig | None = None,
        temp_dir: str | os.PathLike[str] | None = None,
    ) -> None:
        self._runtime = runtime
        self._naming = naming
        self._config = config or CleanupConfig()
        self._temp_dir = Path(temp_dir or tempfile.gettempdir())
        self._lock = threading.Lock()
        self._live: set[str] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._signal_task: asyncio.Task[None] | None = None

    # =========================================================================
    # Live instance registry
    # =========================================================================

    def track(self, name: str) -> None:
        with self._lock:
            self._live.add(name)

    def untrack(self, name: str) -> None:
        with self._lock:
            self._live.discard(name)

    @property
    def tracked(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._live)

    # =========================================================================
    # Sweep
    # =========================================================================

    async def sweep(self) -> int:
        """Force-remove every prefixed container and wait until none remain.

        Instances still tracked as live are among the removed containers;
        they are reported and dropped from the registry.

        Returns:
            Number of containers removed.

        Raises:
            CleanupError: Prefixed containers still exist after the timeout.
        """
        prefix = self._naming.prefix
        logger.info(
            "Removing leftover containers with prefix %s",
            prefix,
            extra={"event": LogEvent.CLEANUP_STARTED, "prefix": prefix},
        )

        found = await self._runtime.list_by_name_prefix(prefix)
        for container_id in found:
            logger.info(
                "Killing and removing container %s",
                container_id[:12],
                extra={"event": LogEvent.CONTAINER_REMOVED, "container": container_id},
            )
            await self._runtime.remove(container_id, force=True)

        await self._wait_converged(prefix)
        self.sweep_temp_files()

        with self._lock:
            interrupted = sorted(self._live)
            self._live.clear()
        if interrupted:
            logger.warning(
                "Removed %d instances that were still in use: %s",
                len(interrupted),
                ", ".join(interrupted),
                extra={"event": LogEvent.INSTANCES_INTERRUPTED, "instances": interrupted},
            )

        logger.info(
            "Cleanup complete, removed %d containers",
            len(found),
            extra={"event": LogEvent.CLEANUP_COMPLETED, "count": len(found)},
        )
        return len(found)

    async def _wait_converged(self, prefix: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout
        while True:
            remaining = await self._runtime.list_by_name_prefix(prefix)
            if not remaining:
                return
            if loop.time() >= deadline:
                logger.error(
                    "Containers still present after cleanup: %s",
                    remaining,
                    extra={"event": LogEvent.CLEANUP_FAILED, "remaining": remaining},
                )
                raise CleanupError(remaining)
            await asyncio.sleep(self._config.interval)

    def sweep_temp_files(self) -> int:
        """Remove leftover prefixed files from the temp directory."""
        removed = 0
        try:
            candidates = list(self._temp_dir.iterdir())
        except OSError as e:
            logger.warning("Cannot list temp directory %s: %s", self._temp_dir, e)
            return 0

        for path in candidates:
            if not path.name.startswith(self._naming.prefix) or not path.is_file():
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Failed to remove temp file %s: %s", path, e)
        return removed

    # =========================================================================
    # Signals
    # =========================================================================

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Sweep on SIGINT/SIGTERM, then re-deliver the signal to exit."""
        loop = loop or asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.add_signal_handler(sig, lambda s=sig: self._on_signal(s))
        self._loop = loop

    def remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in HANDLED_SIGNALS:
            self._loop.remove_signal_handler(sig)
        self._loop = None

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._signal_task is not None:
            return
        logger.warning(
            "Received %s, removing scratchbox containers (%d live)",
            sig.name,
            len(self.tracked),
            extra={
                "event": LogEvent.SIGNAL_RECEIVED,
                "signal": sig.name,
                "instances": sorted(self.tracked),
            },
        )
        self._signal_task = asyncio.ensure_future(self._sweep_and_exit(sig))

    async def _sweep_and_exit(self, sig: signal.Signals) -> None:
        try:
            await self.sweep()
        except Exception:
            logger.exception("Cleanup after %s failed", sig.name)
        finally:
            self.remove_signal_handlers()
            signal.signal(sig, signal.SIG_DFL)
            os.kill(os.getpid(), sig)
