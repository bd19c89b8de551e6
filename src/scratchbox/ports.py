"""Host port allocation for published container ports."""

import logging
import socket
import threading
import time
from dataclasses import dataclass, field

from scratchbox.config import PortConfig
from scratchbox.errors import PortExhaustedError
from scratchbox.logging_schema import LogEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortLease:
    """A host port handed out by the allocator."""

    port: int
    acquired_at: float = field(default_factory=time.monotonic)


class PortAllocator:
    """Hands out ephemeral host ports that are unique for the allocator's lifetime.

    A port returned by the OS is only bound once the container starts, so the
    same number can come back for two instances created close together.
    Every port handed out is remembered and never returned again unless
    ``reuse_released`` is set and the port was explicitly released.

    Exclusivity is process-local: another process can still grab the port
    between ``acquire()`` and the container binding it.
    """

    def __init__(self, config: PortConfig | None = None) -> None:
        self._config = config or PortConfig()
        self._lock = threading.Lock()
        self._allocated: set[int] = set()

    @property
    def allocated(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._allocated)

    def acquire(self) -> PortLease:
        """Reserve a fresh ephemeral port.

        Raises:
            PortExhaustedError: When every attempt returned a port already handed out.
        """
        with self._lock:
            for _ in range(self._config.max_attempts):
                port = self._probe_free_port()
                if port not in self._allocated:
                    self._allocated.add(port)
                    logger.debug(
                        "Acquired port %d",
                        port,
                        extra={"event": LogEvent.PORT_ACQUIRED, "port": port},
                    )
                    return PortLease(port=port)

        logger.warning(
            "No unused port after %d attempts",
            self._config.max_attempts,
            extra={"event": LogEvent.PORT_EXHAUSTED},
        )
        raise PortExhaustedError()

    def acquire_port(self) -> int:
        return self.acquire().port

    def release(self, port: int) -> None:
        """Return a port to the pool (only honoured when ``reuse_released`` is set)."""
        if not self._config.reuse_released:
            return
        with self._lock:
            self._allocated.discard(port)
        logger.debug(
            "Released port %d", port, extra={"event": LogEvent.PORT_RELEASED, "port": port}
        )

    def _probe_free_port(self) -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((self._config.host, 0))
            return sock.getsockname()[1]
