"""Tests for background notification delivery."""

import asyncio

import pytest

from dbaas_engine.models.enums import EventType, InstanceStatus
from dbaas_engine.models.instance import InstanceEvent
from dbaas_engine.services.notifications import NotificationDispatcher


def event(instance_id="inst-1") -> InstanceEvent:
    return InstanceEvent(type=EventType.SUSPENDED, instance_id=instance_id, status=InstanceStatus.SUSPENDED)


@pytest.mark.asyncio
class TestNotificationDispatcher:
    async def test_emit_does_not_wait_for_delivery(self, notifier):
        release = asyncio.Event()
        delivered = []

        async def slow_emit(evt):
            await release.wait()
            delivered.append(evt)

        notifier.emit = slow_emit
        dispatcher = NotificationDispatcher(notifier)

        dispatcher.emit(event())
        assert dispatcher.pending == 1
        assert delivered == []

        release.set()
        await dispatcher.flush()
        assert len(delivered) == 1
        assert dispatcher.pending == 0

    async def test_failed_delivery_is_contained(self, notifier):
        async def failing(evt):
            raise ConnectionError("webhook down")

        notifier.emit = failing
        dispatcher = NotificationDispatcher(notifier)

        dispatcher.emit(event())
        await dispatcher.flush()

        assert dispatcher.pending == 0

    async def test_no_notifier_drops_events(self):
        dispatcher = NotificationDispatcher()

        dispatcher.emit(event())

        assert dispatcher.pending == 0

    async def test_events_delivered_in_emit_order(self, notifier):
        dispatcher = NotificationDispatcher(notifier)

        for instance_id in ("a", "b", "c"):
            dispatcher.emit(event(instance_id))
        await dispatcher.flush()

        assert [e.instance_id for e in notifier.events] == ["a", "b", "c"]
