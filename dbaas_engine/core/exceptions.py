"""Core exceptions for the provisioning engine."""

from enum import Enum


class DBaaSEngineError(Exception):
    """Base exception for provisioning engine operations."""


class ConfigurationError(DBaaSEngineError):
    """Configuration validation or loading failed."""


class SSHConnectionError(DBaaSEngineError):
    """An authenticated SSH session could not be established."""


class PoolExhaustedError(DBaaSEngineError):
    """No session became available before the caller's deadline."""


class CommandErrorKind(Enum):
    """Transport-level failure classes for a remote command."""

    TIMEOUT = "timeout"
    TRANSPORT = "transport"


class CommandError(DBaaSEngineError):
    """A remote command failed below the level of its exit code.

    A command that ran and exited non-zero is never a ``CommandError``; it is
    returned as a normal ``CommandResult``.
    """

    def __init__(self, kind: CommandErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def is_timeout(self) -> bool:
        return self.kind is CommandErrorKind.TIMEOUT


class CommandSecurityError(DBaaSEngineError):
    """A command template parameter failed validation."""


class ProvisioningError(DBaaSEngineError):
    """A logical provisioning failure composed of one or more command failures."""

    def __init__(self, message: str, instance_id: str | None = None):
        super().__init__(message)
        self.instance_id = instance_id


class UnsupportedEngineError(ProvisioningError):
    """The requested database engine is not in the catalog."""


class PlanLimitExceededError(ProvisioningError):
    """The user already has as many live instances as their plan allows."""

    def __init__(self, user_id: str, limit: int):
        super().__init__(f"User {user_id} has reached the plan limit of {limit} instance(s)")
        self.user_id = user_id
        self.limit = limit


class InstanceNotFoundError(DBaaSEngineError):
    """The persistence collaborator has no record for the instance id."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance {instance_id} not found")
        self.instance_id = instance_id


class IllegalTransitionError(DBaaSEngineError):
    """The requested transition is not in the lifecycle table."""

    def __init__(
        self, instance_id: str, current: object, event: object, allowed: list | None = None
    ):
        current_name = getattr(current, "value", current)
        event_name = getattr(event, "value", event)
        message = f"Instance {instance_id}: '{event_name}' is not allowed from status {current_name}"
        if allowed is not None:
            names = ", ".join(getattr(a, "value", str(a)) for a in allowed)
            message += f" (allowed: {names or 'none'})"
        super().__init__(message)
        self.instance_id = instance_id
        self.current = current
        self.event = event
        self.allowed = allowed or []


class ConflictingOperationError(DBaaSEngineError):
    """Another transition for the same instance is already in progress."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance {instance_id} already has a transition in progress")
        self.instance_id = instance_id


# Transport-classified failures are retried once with a fresh session.
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (SSHConnectionError, CommandError)
