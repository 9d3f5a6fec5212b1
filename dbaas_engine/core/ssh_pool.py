"""SSH session pool for remote provisioning commands."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncGenerator

import structlog
from paramiko import AutoAddPolicy, SSHClient
from paramiko.ssh_exception import SSHException

from .config_loader import RemoteHostConfig
from .deadline import Deadline
from .exceptions import PoolExhaustedError, SSHConnectionError

logger = structlog.get_logger()

# Exceptions paramiko raises for network or protocol trouble
TRANSPORT_EXCEPTIONS: tuple[type[BaseException], ...] = (SSHException, OSError, EOFError)


@dataclass(eq=False)
class Session:
    """An authenticated SSH connection owned by a ``SessionPool``."""

    client: SSHClient
    host: RemoteHostConfig
    created_at: datetime = field(default_factory=datetime.now)
    last_used_at: datetime = field(default_factory=datetime.now)
    healthy: bool = True
    use_count: int = 0
    leased: bool = False

    def is_alive(self) -> bool:
        """Check if the transport is still up by sending a keepalive packet."""
        try:
            transport = self.client.get_transport()
            if transport and transport.is_active():
                transport.send_ignore()
                return True
        except TRANSPORT_EXCEPTIONS:
            pass
        return False

    def idle_seconds(self) -> float:
        return (datetime.now() - self.last_used_at).total_seconds()

    def touch(self) -> None:
        """Update last used timestamp."""
        self.last_used_at = datetime.now()
        self.use_count += 1

    def probe(self, timeout: float) -> bool:
        """Run a no-op remote command. Blocking; call from an executor."""
        if not self.is_alive():
            return False
        try:
            stdin, stdout, stderr = self.client.exec_command("true", timeout=timeout)
            stdin.close()
            stdout.read()
            return stdout.channel.recv_exit_status() == 0
        except TRANSPORT_EXCEPTIONS:
            return False

    def close(self) -> None:
        self.healthy = False
        try:
            self.client.close()
        except TRANSPORT_EXCEPTIONS as e:
            logger.warning("Error closing SSH session", host=self.host.key, error=str(e))


@dataclass(frozen=True)
class PoolState:
    """Point-in-time view of one host's pool accounting."""

    idle: int
    borrowed: int
    total_created: int
    max_pool_size: int


class SessionPool:
    """Bounded pool of SSH sessions to a single host.

    Accounting (idle list and borrowed count) is mutated only while holding
    ``self._condition``; connecting, probing and closing happen outside it.
    A slot is reserved by incrementing ``_borrowed`` before any network I/O, so
    ``idle + borrowed <= max_pool_size`` holds at every await point.
    """

    def __init__(
        self,
        host: RemoteHostConfig,
        freshness_threshold: float = 60.0,
        acquire_timeout: float = 15.0,
    ):
        """Initialize a pool for one host.

        Args:
            host: Host configuration, including ``max_pool_size``
            freshness_threshold: Idle seconds before a session is re-probed on acquire
            acquire_timeout: Wait used when the caller gives no deadline
        """
        self.host = host
        self.freshness_threshold = freshness_threshold
        self.acquire_timeout = acquire_timeout

        self._idle: list[Session] = []
        self._borrowed = 0
        self._total_created = 0
        self._closed = False
        self._condition = asyncio.Condition()
        self._stats = {
            "connections_created": 0,
            "connections_reused": 0,
            "connections_closed": 0,
            "connection_errors": 0,
            "revalidations_failed": 0,
        }

        logger.info(
            "SSH session pool initialized",
            host=host.key,
            max_pool_size=host.max_pool_size,
            freshness_threshold=freshness_threshold,
        )

    @property
    def max_pool_size(self) -> int:
        return self.host.max_pool_size

    @property
    def state(self) -> PoolState:
        return PoolState(
            idle=len(self._idle),
            borrowed=self._borrowed,
            total_created=self._total_created,
            max_pool_size=self.max_pool_size,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _connect(self) -> SSHClient:
        """Open and authenticate a new SSH client. Blocking."""
        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs: dict[str, Any] = {
            "hostname": self.host.hostname,
            "port": self.host.port,
            "username": self.host.user,
            "timeout": self.host.connect_timeout,
            "banner_timeout": self.host.connect_timeout,
            "auth_timeout": self.host.connect_timeout,
        }
        if self.host.identity_file:
            connect_kwargs["key_filename"] = self.host.identity_file
        if self.host.password is not None:
            connect_kwargs["password"] = self.host.password.get_secret_value()
            connect_kwargs["look_for_keys"] = False
            connect_kwargs["allow_agent"] = False

        try:
            client.connect(**connect_kwargs)
            transport = client.get_transport()
            if transport:
                transport.set_keepalive(30)
            return client
        except TRANSPORT_EXCEPTIONS as e:
            client.close()
            raise SSHConnectionError(f"Failed to connect to {self.host.hostname}: {e}") from e

    async def _open_session(self, deadline: Deadline) -> Session:
        """Connect in the default executor, bounded by the caller's deadline."""
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._connect)
        try:
            client = await asyncio.wait_for(asyncio.shield(future), deadline.remaining())
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            # The connect thread cannot be interrupted; close whatever it produces.
            future.add_done_callback(_close_orphaned_client)
            self._stats["connection_errors"] += 1
            if isinstance(e, asyncio.CancelledError):
                raise
            raise SSHConnectionError(
                f"Timed out connecting to {self.host.hostname} before the deadline"
            ) from None
        except SSHConnectionError:
            self._stats["connection_errors"] += 1
            raise

        self._stats["connections_created"] += 1
        self._total_created += 1
        logger.debug(
            "Created new SSH session",
            host=self.host.key,
            total_created=self._total_created,
        )
        return Session(client=client, host=self.host)

    async def _validate(self, session: Session, deadline: Deadline) -> bool:
        """Cheap check for fresh sessions, remote probe for stale ones."""
        if not session.healthy:
            return False
        if session.idle_seconds() < self.freshness_threshold:
            transport = session.client.get_transport()
            return bool(transport and transport.is_active())

        timeout = deadline.cap(self.host.read_timeout)
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, session.probe, timeout), timeout
            )
        except asyncio.TimeoutError:
            return False

    async def _close_session(self, session: Session) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, session.close)
        self._stats["connections_closed"] += 1
        logger.debug(
            "Closed SSH session",
            host=self.host.key,
            use_count=session.use_count,
            lifetime=(datetime.now() - session.created_at).total_seconds(),
        )

    async def _free_slot(self) -> None:
        async with self._condition:
            self._borrowed -= 1
            self._condition.notify()

    async def acquire(self, deadline: Deadline | None = None) -> Session:
        """Borrow a session, opening one if capacity allows.

        Raises:
            PoolExhaustedError: No slot freed up before the deadline
            SSHConnectionError: A new session could not be established
        """
        deadline = deadline or Deadline.after(self.acquire_timeout)
        candidate: Session | None = None

        async with self._condition:
            while True:
                if self._closed:
                    raise SSHConnectionError(f"Session pool for {self.host.key} is shut down")
                if self._idle:
                    # Most recently used sessions sit at the end
                    candidate = self._idle.pop()
                    self._borrowed += 1
                    break
                if self._borrowed < self.max_pool_size:
                    self._borrowed += 1
                    break
                remaining = deadline.remaining()
                if remaining is not None and remaining <= 0:
                    raise PoolExhaustedError(
                        f"No SSH session available for {self.host.key} "
                        f"({self.max_pool_size} in use)"
                    )
                try:
                    await asyncio.wait_for(self._condition.wait(), remaining)
                except asyncio.TimeoutError:
                    raise PoolExhaustedError(
                        f"Timed out waiting for an SSH session for {self.host.key} "
                        f"({self.max_pool_size} in use)"
                    ) from None

        # A slot is reserved from here on; give it back on any failure.
        try:
            if candidate is not None:
                if await self._validate(candidate, deadline):
                    candidate.leased = True
                    candidate.touch()
                    self._stats["connections_reused"] += 1
                    return candidate
                self._stats["revalidations_failed"] += 1
                logger.info(
                    "Discarding stale SSH session",
                    host=self.host.key,
                    idle_seconds=candidate.idle_seconds(),
                )
                await self._close_session(candidate)

            session = await self._open_session(deadline)
        except BaseException:
            await self._free_slot()
            raise

        session.leased = True
        session.touch()
        return session

    async def release(self, session: Session) -> None:
        """Return a borrowed session; unhealthy sessions are closed instead."""
        keep = False
        async with self._condition:
            if not session.leased:
                logger.debug("Ignoring release of a session that is not borrowed", host=self.host.key)
                return
            session.leased = False
            self._borrowed -= 1
            if session.healthy and not self._closed:
                transport = session.client.get_transport()
                keep = bool(transport and transport.is_active())
            if keep:
                session.last_used_at = datetime.now()
                self._idle.append(session)
            self._condition.notify()

        if not keep:
            await self._close_session(session)

    async def invalidate(self, session: Session) -> None:
        """Forcibly close a session and drop it from accounting."""
        async with self._condition:
            session.healthy = False
            if session.leased:
                session.leased = False
                self._borrowed -= 1
            elif session in self._idle:
                self._idle.remove(session)
            self._condition.notify()

        logger.info("Invalidated SSH session", host=self.host.key)
        await self._close_session(session)

    @asynccontextmanager
    async def session(self, deadline: Deadline | None = None) -> AsyncGenerator[Session, None]:
        """Borrow a session for the duration of a ``with`` block."""
        session = await self.acquire(deadline)
        try:
            yield session
        finally:
            await self.release(session)

    async def test_connectivity(self) -> bool:
        """Open a throwaway session and probe it without touching pool accounting."""
        deadline = Deadline.after(self.host.connect_timeout + self.host.read_timeout)
        loop = asyncio.get_running_loop()
        try:
            session = await self._open_session(deadline)
        except SSHConnectionError as e:
            logger.warning("SSH connectivity test failed", host=self.host.key, error=str(e))
            return False

        # Throwaway sessions do not count toward pool statistics
        self._total_created -= 1
        self._stats["connections_created"] -= 1
        try:
            ok = await loop.run_in_executor(None, session.probe, self.host.read_timeout)
        finally:
            await loop.run_in_executor(None, session.close)

        logger.info("SSH connectivity test finished", host=self.host.key, success=ok)
        return ok

    async def shutdown(self) -> None:
        """Close idle sessions and refuse further acquires.

        Sessions still borrowed are closed when they are released.
        """
        async with self._condition:
            self._closed = True
            idle, self._idle = self._idle, []
            self._condition.notify_all()

        for session in idle:
            await self._close_session(session)

        logger.info("SSH session pool shut down", host=self.host.key, stats=self.get_stats())

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        return {
            **self._stats,
            "idle": len(self._idle),
            "borrowed": self._borrowed,
            "total_created": self._total_created,
            "max_pool_size": self.max_pool_size,
        }


def _close_orphaned_client(future: "asyncio.Future[SSHClient]") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


class SessionPoolRegistry:
    """Per-host pools, created on first use and owned by the composition root."""

    def __init__(self, freshness_threshold: float = 60.0, acquire_timeout: float = 15.0):
        self.freshness_threshold = freshness_threshold
        self.acquire_timeout = acquire_timeout
        self._pools: dict[str, SessionPool] = {}

    def get_pool(self, host: RemoteHostConfig) -> SessionPool:
        pool = self._pools.get(host.key)
        if pool is None or pool.closed:
            pool = SessionPool(
                host,
                freshness_threshold=self.freshness_threshold,
                acquire_timeout=self.acquire_timeout,
            )
            self._pools[host.key] = pool
        return pool

    async def acquire(self, host: RemoteHostConfig, deadline: Deadline | None = None) -> Session:
        return await self.get_pool(host).acquire(deadline)

    async def release(self, session: Session) -> None:
        await self._owner(session).release(session)

    async def invalidate(self, session: Session) -> None:
        await self._owner(session).invalidate(session)

    async def test_connectivity(self, host: RemoteHostConfig) -> bool:
        return await self.get_pool(host).test_connectivity()

    async def check_hosts(self, hosts: dict[str, RemoteHostConfig]) -> dict[str, bool]:
        """Probe each host once; results are keyed like ``hosts``."""
        results = {}
        for host_id, host in hosts.items():
            results[host_id] = await self.test_connectivity(host)
            logger.info("Host check", host_id=host_id, host=host.key, reachable=results[host_id])
        return results

    async def shutdown(self, host: RemoteHostConfig) -> None:
        pool = self._pools.pop(host.key, None)
        if pool is not None:
            await pool.shutdown()

    async def shutdown_all(self) -> None:
        pools, self._pools = list(self._pools.values()), {}
        for pool in pools:
            await pool.shutdown()

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {key: pool.get_stats() for key, pool in self._pools.items()}

    def _owner(self, session: Session) -> SessionPool:
        pool = self._pools.get(session.host.key)
        if pool is None:
            # The pool was shut down while the session was out; build a closed stand-in
            pool = SessionPool(session.host, self.freshness_threshold, self.acquire_timeout)
            pool._closed = True
        return pool
