"""Service layer for the provisioning engine."""

from .collector import StatsLogCollector
from .driver import RemoteContainerDriver
from .lifecycle import InstanceLifecycleManager
from .notifications import NotificationDispatcher
from .ports import PortAllocator
from .repository import InstanceRepository, Notifier

__all__ = [
    "InstanceLifecycleManager",
    "InstanceRepository",
    "NotificationDispatcher",
    "Notifier",
    "PortAllocator",
    "RemoteContainerDriver",
    "StatsLogCollector",
]
