"""Enum definitions for instance lifecycle and monitoring."""

from enum import Enum


class InstanceStatus(Enum):
    """Lifecycle status of a database instance."""

    CREATING = "CREATING"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class TransitionEvent(Enum):
    """Events that drive the lifecycle state machine."""

    CREATE_REQUESTED = "create_requested"
    CONTAINER_STARTED = "container_started"
    PROVISIONING_FAILED = "provisioning_failed"
    SUSPEND_REQUESTED = "suspend_requested"
    RESUME_REQUESTED = "resume_requested"
    DELETE_REQUESTED = "delete_requested"


class LogLevel(Enum):
    """Severity inferred for a container log line."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"
    BACKUP = "BACKUP"
    RESTORE = "RESTORE"
    QUERY = "QUERY"


class EventType(Enum):
    """Lifecycle notifications emitted after a transition commits."""

    CREATED = "instance.created"
    PROVISIONING_FAILED = "instance.provisioning_failed"
    SUSPENDED = "instance.suspended"
    RESUMED = "instance.resumed"
    DELETED = "instance.deleted"
    PASSWORD_ROTATED = "instance.password_rotated"
