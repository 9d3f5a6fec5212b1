"""Host port allocation for new containers."""

import asyncio

import structlog

from ..core.config_loader import RemoteHostConfig
from ..core.exceptions import ProvisioningError
from .repository import InstanceRepository

logger = structlog.get_logger()


class PortAllocator:
    """Pick free host ports using persisted records as the source of truth.

    Ports handed out but not yet persisted are held in a per-host reservation
    set so two concurrent creates on one host cannot pick the same port.
    """

    def __init__(self, repository: InstanceRepository):
        self.repository = repository
        self._reserved: dict[str, set[int]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, host_id: str) -> asyncio.Lock:
        lock = self._locks.get(host_id)
        if lock is None:
            lock = self._locks[host_id] = asyncio.Lock()
        return lock

    async def reserve(self, host_id: str, host: RemoteHostConfig) -> int:
        """Reserve the lowest free port in the host's range.

        Raises:
            ProvisioningError: Every port in the range is taken
        """
        async with self._lock(host_id):
            reserved = self._reserved.setdefault(host_id, set())
            for port in range(host.port_range_start, host.port_range_end + 1):
                if port in reserved:
                    continue
                if await self.repository.is_port_in_use(host_id, port):
                    continue
                reserved.add(port)
                logger.debug("Reserved host port", host_id=host_id, port=port)
                return port

        raise ProvisioningError(
            f"No free port on host {host_id} in range "
            f"{host.port_range_start}-{host.port_range_end}"
        )

    async def release(self, host_id: str, port: int) -> None:
        """Drop a reservation once the port is persisted or no longer needed."""
        async with self._lock(host_id):
            self._reserved.get(host_id, set()).discard(port)

    def reserved(self, host_id: str) -> frozenset[int]:
        return frozenset(self._reserved.get(host_id, set()))
