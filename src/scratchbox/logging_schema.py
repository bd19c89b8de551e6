"""Log event types for structured logging."""

from enum import StrEnum


class LogEvent(StrEnum):
    """Log event types for Scratchbox.

    Used with logger.info/warning/error extra dict:
        logger.info("message", extra={"event": LogEvent.CONTAINER_STARTED, ...})
    """

    # Environment lifecycle
    ENVIRONMENT_STARTED = "environment_started"
    ENVIRONMENT_CLOSED = "environment_closed"

    # Port events
    PORT_ACQUIRED = "port_acquired"
    PORT_RELEASED = "port_released"
    PORT_EXHAUSTED = "port_exhausted"

    # Container events
    IMAGE_PULLED = "image_pulled"
    CONTAINER_CREATED = "container_created"
    CONTAINER_STARTED = "container_started"
    CONTAINER_STOPPED = "container_stopped"
    CONTAINER_REMOVED = "container_removed"
    CONTAINER_DIED = "container_died"

    # Instance lifecycle
    INSTANCE_READY = "instance_ready"
    INSTANCE_FAILED = "instance_failed"
    TEARDOWN_FAILED = "teardown_failed"

    # Readiness events
    READINESS_CHANGED = "readiness_changed"
    READINESS_TIMED_OUT = "readiness_timed_out"
    READINESS_PROBED = "readiness_probed"

    # Exec / file delivery
    EXEC_COMPLETED = "exec_completed"
    EXEC_FAILED = "exec_failed"
    EXEC_DISPATCHED = "exec_dispatched"
    EXEC_RETRYING = "exec_retrying"
    ARCHIVE_COPIED = "archive_copied"

    # Cleanup events
    CLEANUP_STARTED = "cleanup_started"
    CLEANUP_COMPLETED = "cleanup_completed"
    CLEANUP_FAILED = "cleanup_failed"
    SIGNAL_RECEIVED = "signal_received"
    INSTANCES_INTERRUPTED = "instances_interrupted"
