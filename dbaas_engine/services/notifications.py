"""Fire-and-forget delivery of lifecycle events."""

import asyncio

import structlog

from ..models.instance import InstanceEvent
from .repository import Notifier

logger = structlog.get_logger()


class NotificationDispatcher:
    """Schedules each event on its own task so transitions never wait on delivery."""

    def __init__(self, notifier: Notifier | None = None):
        self.notifier = notifier
        self._pending: set[asyncio.Task[None]] = set()

    def emit(self, event: InstanceEvent) -> None:
        if self.notifier is None:
            logger.debug("No notifier configured, dropping event", event_type=event.type.value)
            return
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: InstanceEvent) -> None:
        try:
            await self.notifier.emit(event)  # type: ignore[union-attr]
        except Exception as e:
            logger.warning(
                "Notification delivery failed",
                event_type=event.type.value,
                instance_id=event.instance_id,
                error=str(e),
            )
        else:
            logger.debug(
                "Notification delivered", event_type=event.type.value, instance_id=event.instance_id
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
