"""Concurrent fan-out of independent setup steps."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

InitTask = Callable[[], Awaitable[Any]]


class ConcurrentInitializer:
    """Runs a batch of setup steps concurrently and reports the first failure.

    Every step runs to completion even when another one fails, so a failing
    queue declaration does not leave half-started siblings behind.
    """

    def __init__(self, limit: int | None = None) -> None:
        self._limit = limit

    async def run_all(self, tasks: Iterable[InitTask]) -> BaseException | None:
        """Run all steps, returning the first error in completion order (or None)."""
        factories = list(tasks)
        if not factories:
            return None

        semaphore = asyncio.Semaphore(self._limit) if self._limit else None

        async def run_one(factory: InitTask) -> Any:
            if semaphore is None:
                return await factory()
            async with semaphore:
                return await factory()

        pending = {asyncio.ensure_future(run_one(factory)) for factory in factories}
        first_error: BaseException | None = None
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task.cancelled():
                        continue
                    error = task.exception()
                    if error is not None and first_error is None:
                        first_error = error
                    elif error is not None:
                        logger.debug("Additional setup failure: %s", error)
        finally:
            for task in pending:
                task.cancel()

        return first_error

    async def run_all_or_raise(self, tasks: Iterable[InitTask]) -> None:
        error = await self.run_all(tasks)
        if error is not None:
            raise error
