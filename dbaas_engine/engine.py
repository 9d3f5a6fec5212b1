"""Composition root wiring pools, executor, driver, lifecycle and collector."""

from typing import Any

import structlog

from .core.config_loader import EngineConfig
from .core.executor import CommandExecutor
from .core.ssh_pool import SessionPoolRegistry
from .models.instance import (
    CreateInstanceResult,
    CredentialDisclosure,
    InstanceDetails,
    ProvisioningRequest,
)
from .services.collector import StatsLogCollector
from .services.driver import RemoteContainerDriver
from .services.lifecycle import InstanceLifecycleManager
from .services.notifications import NotificationDispatcher
from .services.ports import PortAllocator
from .services.repository import InstanceRepository, Notifier

logger = structlog.get_logger()


class ProvisioningEngine:
    """Owns every long-lived object of the engine.

    Use as an async context manager so pools are drained on exit::

        async with ProvisioningEngine(config, repository) as engine:
            result = await engine.create_instance(request)
    """

    def __init__(
        self,
        config: EngineConfig,
        repository: InstanceRepository,
        notifier: Notifier | None = None,
        pools: SessionPoolRegistry | None = None,
    ):
        settings = config.settings
        self.config = config
        self.repository = repository
        self.pools = pools or SessionPoolRegistry(
            freshness_threshold=settings.session_freshness,
            acquire_timeout=settings.acquire_timeout,
        )
        self.executor = CommandExecutor(self.pools, default_timeout=settings.command_timeout)
        self.ports = PortAllocator(repository)
        self.driver = RemoteContainerDriver(config, self.executor, self.ports)
        self.notifications = NotificationDispatcher(notifier)
        self.lifecycle = InstanceLifecycleManager(config, self.driver, repository, self.notifications)
        self.collector = StatsLogCollector(self.driver, repository, settings.command_timeout)

        logger.info("Provisioning engine initialized", hosts=list(config.hosts))

    async def __aenter__(self) -> "ProvisioningEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def create_instance(
        self, request: ProvisioningRequest, timeout: float | None = None
    ) -> CreateInstanceResult:
        return await self.lifecycle.create_instance(request, timeout)

    async def suspend_instance(self, instance_id: str, timeout: float | None = None) -> InstanceDetails:
        return await self.lifecycle.suspend_instance(instance_id, timeout)

    async def resume_instance(self, instance_id: str, timeout: float | None = None) -> InstanceDetails:
        return await self.lifecycle.resume_instance(instance_id, timeout)

    async def delete_instance(self, instance_id: str, timeout: float | None = None) -> InstanceDetails:
        return await self.lifecycle.delete_instance(instance_id, timeout)

    async def rotate_password(
        self, instance_id: str, current_password: str, timeout: float | None = None
    ) -> CredentialDisclosure:
        return await self.lifecycle.rotate_password(instance_id, current_password, timeout)

    async def get_instance_details(self, instance_id: str) -> InstanceDetails:
        return await self.lifecycle.get_instance_details(instance_id)

    async def check_hosts(self) -> dict[str, bool]:
        """Run a connectivity probe against every configured host."""
        return await self.pools.check_hosts(self.config.hosts)

    def get_stats(self) -> dict[str, Any]:
        return {
            "pools": self.pools.get_stats(),
            "pending_notifications": self.notifications.pending,
        }

    async def shutdown(self) -> None:
        """Flush notifications and close every pooled session."""
        await self.notifications.flush()
        await self.pools.shutdown_all()
        logger.info("Provisioning engine shut down")
