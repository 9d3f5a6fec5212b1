"""Data models for the provisioning engine."""

from .container import (  # noqa: F401
    ContainerHandle,
    ContainerSpec,
    LogEntry,
    StatsSnapshot,
)
from .enums import (  # noqa: F401
    EventType,
    InstanceStatus,
    LogLevel,
    TransitionEvent,
)
from .instance import (  # noqa: F401
    CreateInstanceResult,
    CredentialDisclosure,
    InstanceDetails,
    InstanceEvent,
    InstanceRecord,
    ProvisioningRequest,
)

__all__ = [
    # Container models
    "ContainerHandle",
    "ContainerSpec",
    "LogEntry",
    "StatsSnapshot",
    # Enums
    "EventType",
    "InstanceStatus",
    "LogLevel",
    "TransitionEvent",
    # Instance models
    "CreateInstanceResult",
    "CredentialDisclosure",
    "InstanceDetails",
    "InstanceEvent",
    "InstanceRecord",
    "ProvisioningRequest",
]
