"""Instance-related data models."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import EventType, InstanceStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EngineModel(BaseModel):
    """Base model with common engine settings."""

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Convert to dict with exclude_none by default."""
        kwargs.setdefault("exclude_none", True)
        return super().model_dump(**kwargs)


class ProvisioningRequest(EngineModel):
    """A validated intent to create a database instance."""

    user_id: str
    subscription_id: str
    engine: str = Field(min_length=1, max_length=32)
    name: str | None = Field(default=None, max_length=63, description="Custom database name")
    instance_id: str | None = Field(
        default=None,
        pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,63}$",
        description="Caller-chosen id; a retried request reuses it",
    )
    host_id: str | None = None
    max_instances: int | None = Field(
        default=None, ge=1, description="Plan limit on the user's live instances"
    )


class InstanceRecord(EngineModel):
    """Persisted view of an instance, owned by the repository."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    subscription_id: str
    engine: str
    container_name: str
    host_id: str
    port: int | None = None
    status: InstanceStatus
    database_name: str
    username: str
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def with_status(self, status: InstanceStatus, **changes: Any) -> "InstanceRecord":
        """Next version of this record in ``status``."""
        return self.model_copy(update={"status": status, "updated_at": utcnow(), **changes})


class InstanceDetails(EngineModel):
    """Instance information safe to return on every read.

    Never carries a password; see ``CredentialDisclosure``.
    """

    id: str
    engine: str
    status: InstanceStatus
    host: str
    port: int | None = None
    database_name: str
    username: str
    container_name: str
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: InstanceRecord, public_host: str) -> "InstanceDetails":
        return cls(
            id=record.id,
            engine=record.engine,
            status=record.status,
            host=public_host,
            port=record.port,
            database_name=record.database_name,
            username=record.username,
            container_name=record.container_name,
            failure_reason=record.failure_reason,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class CredentialDisclosure(EngineModel):
    """The one-time plaintext credential handed back at creation or rotation."""

    model_config = ConfigDict(frozen=True)

    username: str
    password: str = Field(repr=False)
    database_name: str
    host: str
    port: int
    connection_string: str = Field(repr=False)
    sample_connections: dict[str, str] = Field(default_factory=dict, repr=False)


class CreateInstanceResult(EngineModel):
    """Response of a successful create: details plus the one-time credential."""

    instance: InstanceDetails
    credentials: CredentialDisclosure


class InstanceEvent(EngineModel):
    """Lifecycle notification handed to the notification collaborator."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    instance_id: str
    status: InstanceStatus
    timestamp: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)
