"""Collaborator interfaces the engine consumes but does not implement."""

from typing import Protocol, runtime_checkable

from ..models.instance import InstanceEvent, InstanceRecord


@runtime_checkable
class InstanceRepository(Protocol):
    """Persistence collaborator for instance records and credential hashes.

    Records in ``DELETED`` status must not be reported by ``is_port_in_use``
    or counted by ``count_active_instances``.
    """

    async def load_instance(self, instance_id: str) -> InstanceRecord | None: ...

    async def save_instance(self, record: InstanceRecord) -> None: ...

    async def is_port_in_use(self, host_id: str, port: int) -> bool: ...

    async def count_active_instances(self, user_id: str) -> int: ...

    async def save_credential(self, instance_id: str, username: str, password_hash: str) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    """Notification collaborator. Delivery is best effort."""

    async def emit(self, event: InstanceEvent) -> None: ...
