"""Resource naming utilities."""

import re
import uuid

from scratchbox.config import ScratchboxConfig

_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")


class ResourceNaming:
    """Centralized naming conventions for scratchbox containers.

    Every name carries the reserved prefix exactly once and a random token,
    so names never collide between concurrently running tests.
    """

    def __init__(self, config: ScratchboxConfig) -> None:
        self._prefix = config.runtime.resource_prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    def container_name(self, name: str) -> str:
        base = _INVALID_CHARS.sub("-", name.replace(self._prefix, ""))
        base = base.strip("-_.") or "instance"
        return f"{self._prefix}{base}-{uuid.uuid4().hex[:12]}"

    def is_managed(self, container_name: str) -> bool:
        return container_name.lstrip("/").startswith(self._prefix)
