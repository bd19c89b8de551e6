"""Error handling module for scratchbox.

This module defines error codes, exception classes, and the detail model
used when an error is logged or reported to a test.

Error Detail Format:
{
    "code": "PROBE_TIMED_OUT",
    "message": "Timed out waiting for scratchbox-postgres-ab12 to be healthy",
    "diagnostic": "psql: error: connection refused"
}

Usage:
    from scratchbox.errors import ExecFailedError

    raise ExecFailedError(["apk", "add", "curl"], exit_code=1, output=output)
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    PORT_EXHAUSTED = "PORT_EXHAUSTED"
    RUNTIME_UNAVAILABLE = "RUNTIME_UNAVAILABLE"
    IMAGE_PULL_FAILED = "IMAGE_PULL_FAILED"
    CREATE_FAILED = "CREATE_FAILED"
    START_FAILED = "START_FAILED"
    PROBE_TIMED_OUT = "PROBE_TIMED_OUT"
    INSTANCE_DIED = "INSTANCE_DIED"
    EXEC_FAILED = "EXEC_FAILED"
    ARCHIVE_BUILD_FAILED = "ARCHIVE_BUILD_FAILED"
    CLEANUP_FAILED = "CLEANUP_FAILED"


class ErrorDetail(BaseModel):
    """Error detail containing code, message and the latest diagnostic."""

    code: str
    message: str
    diagnostic: str = ""


class ScratchboxError(Exception):
    """Base exception for scratchbox.

    All scratchbox specific exceptions inherit from this class so a test can
    catch every provisioning failure with one clause.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        diagnostic: Most recent probe output, exec output or engine error
    """

    def __init__(self, code: ErrorCode, message: str, diagnostic: str = "") -> None:
        self.code = code
        self.message = message
        self.diagnostic = diagnostic
        super().__init__(self._render())

    def _render(self) -> str:
        if self.diagnostic:
            return f"{self.message}: {self.diagnostic.strip()}"
        return self.message

    def to_detail(self) -> ErrorDetail:
        """Convert exception to ErrorDetail model."""
        return ErrorDetail(
            code=self.code.value, message=self.message, diagnostic=self.diagnostic
        )


class PortExhaustedError(ScratchboxError):
    """No unused host port could be found."""

    def __init__(self, message: str = "Took too long to find a free port") -> None:
        super().__init__(ErrorCode.PORT_EXHAUSTED, message)


class RuntimeUnavailableError(ScratchboxError):
    """The container engine could not be reached."""

    def __init__(
        self, message: str = "Container engine unavailable", diagnostic: str = ""
    ) -> None:
        super().__init__(ErrorCode.RUNTIME_UNAVAILABLE, message, diagnostic)


class ImagePullError(ScratchboxError):
    """Image could not be pulled."""

    def __init__(self, image: str, diagnostic: str = "") -> None:
        self.image = image
        super().__init__(ErrorCode.IMAGE_PULL_FAILED, f"Failed to pull {image}", diagnostic)


class CreateError(ScratchboxError):
    """Container could not be created."""

    def __init__(self, name: str, diagnostic: str = "") -> None:
        self.name = name
        super().__init__(ErrorCode.CREATE_FAILED, f"Failed to create {name}", diagnostic)


class StartError(ScratchboxError):
    """Container could not be started."""

    def __init__(self, name: str, diagnostic: str = "") -> None:
        self.name = name
        super().__init__(ErrorCode.START_FAILED, f"Failed to start {name}", diagnostic)


class ProbeTimedOutError(ScratchboxError):
    """Readiness probe did not succeed before the timeout."""

    def __init__(self, name: str, timeout: float, last_output: str = "") -> None:
        self.name = name
        self.timeout = timeout
        self.last_output = last_output
        super().__init__(
            ErrorCode.PROBE_TIMED_OUT,
            f"Timed out after {timeout:g}s waiting for {name} to be healthy, "
            "the last health check output was",
            last_output or "<none>",
        )


class InstanceDiedError(ScratchboxError):
    """Instance stopped running before it became healthy."""

    def __init__(
        self, name: str, exit_code: int | None = None, last_output: str = ""
    ) -> None:
        self.name = name
        self.exit_code = exit_code
        self.last_output = last_output
        message = f"{name} abruptly stopped running"
        if exit_code is not None:
            message = f"{message} (exit code {exit_code})"
        super().__init__(ErrorCode.INSTANCE_DIED, message, last_output)


class ExecFailedError(ScratchboxError):
    """Attached command exited non-zero."""

    def __init__(self, argv: list[str], exit_code: int | None, output: str = "") -> None:
        self.argv = list(argv)
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            ErrorCode.EXEC_FAILED,
            f"Command {' '.join(self.argv)!r} exited with code {exit_code}",
            output,
        )


class ArchiveBuildError(ScratchboxError):
    """Archive source missing or unreadable."""

    def __init__(self, message: str, diagnostic: str = "") -> None:
        super().__init__(ErrorCode.ARCHIVE_BUILD_FAILED, message, diagnostic)


class CleanupError(ScratchboxError):
    """Orphaned instances could not be cleared in time."""

    def __init__(self, remaining: list[str], message: str | None = None) -> None:
        self.remaining = list(remaining)
        super().__init__(
            ErrorCode.CLEANUP_FAILED,
            message or "Timed out waiting for all scratchbox containers to get removed",
            ", ".join(self.remaining),
        )
