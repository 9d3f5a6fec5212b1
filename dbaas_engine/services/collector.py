"""On-demand stats and log collection for running instances."""

import asyncio
from datetime import datetime

import structlog

from ..core.deadline import Deadline
from ..core.exceptions import DBaaSEngineError, InstanceNotFoundError
from ..models.container import LogEntry, StatsSnapshot
from ..models.enums import InstanceStatus
from .driver import RemoteContainerDriver
from .lifecycle import InstanceLifecycleManager
from .repository import InstanceRepository

logger = structlog.get_logger()


class StatsLogCollector:
    """Sample resource usage and recent logs without touching instance status.

    A failed sample means the reading is missing, not that the instance is
    unhealthy, so ``collect`` logs and returns None instead of raising.
    """

    def __init__(
        self,
        driver: RemoteContainerDriver,
        repository: InstanceRepository,
        command_timeout: float = 30.0,
    ):
        self.driver = driver
        self.repository = repository
        self.command_timeout = command_timeout

    async def collect(self, instance_id: str, timeout: float | None = None) -> StatsSnapshot | None:
        try:
            record = await self.repository.load_instance(instance_id)
        except Exception as e:
            logger.warning("Stats collection skipped, record unavailable", instance_id=instance_id, error=str(e))
            return None
        if record is None or record.status is not InstanceStatus.RUNNING:
            logger.debug(
                "Stats collection skipped",
                instance_id=instance_id,
                status=record.status.value if record else None,
            )
            return None

        deadline = Deadline.after(timeout or self.command_timeout)
        try:
            snapshot = await self.driver.read_stats(
                InstanceLifecycleManager.handle_for(record), instance_id, deadline
            )
        except DBaaSEngineError as e:
            logger.warning(
                "Stats collection failed",
                instance_id=instance_id,
                container=record.container_name,
                error=str(e),
            )
            return None

        logger.debug(
            "Stats collected",
            instance_id=instance_id,
            cpu_percent=snapshot.cpu_percent,
            memory_usage_mb=snapshot.memory_usage_mb,
        )
        return snapshot

    async def collect_many(self, instance_ids: list[str], timeout: float | None = None) -> dict[str, StatsSnapshot]:
        """Sample several instances concurrently; missing samples are left out."""
        snapshots = await asyncio.gather(*(self.collect(i, timeout) for i in instance_ids))
        return {i: s for i, s in zip(instance_ids, snapshots) if s is not None}

    async def tail_logs(
        self,
        instance_id: str,
        since: datetime | str | None = None,
        lines: int | None = None,
        timeout: float | None = None,
    ) -> list[LogEntry]:
        """Recent log lines. Unlike ``collect``, failures propagate.

        Raises:
            InstanceNotFoundError: Unknown instance id
        """
        record = await self.repository.load_instance(instance_id)
        if record is None:
            raise InstanceNotFoundError(instance_id)
        deadline = Deadline.after(timeout or self.command_timeout)
        return await self.driver.read_logs(
            InstanceLifecycleManager.handle_for(record), since=since, tail=lines, deadline=deadline
        )
