"""Remote container driver: container intents as docker commands over SSH."""

import asyncio
import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from ..core.config_loader import EngineConfig, RemoteHostConfig
from ..core.deadline import Deadline
from ..core.exceptions import RETRYABLE_ERRORS, ProvisioningError
from ..core.executor import CommandExecutor, CommandResult
from ..core.security.command_builder import DockerCommandBuilder, RemoteCommand
from ..models.container import ContainerHandle, ContainerSpec, LogEntry, StatsSnapshot
from ..models.enums import LogLevel
from .ports import PortAllocator

logger = structlog.get_logger()

# docker's wording for a name collision on ``docker run``
_NAME_CONFLICT = re.compile(r"Conflict\.|is already in use", re.IGNORECASE)
_NO_SUCH_CONTAINER = re.compile(r"No such (container|object)", re.IGNORECASE)
_REMOVAL_IN_PROGRESS = re.compile(r"removal of container .* is already in progress", re.IGNORECASE)

_LOG_LINE = re.compile(
    r"^(?P<ts>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?\s(?P<msg>.*)$"
)
_ERROR_WORDS = re.compile(r"\b(ERROR|FATAL|PANIC|CRITICAL|EXCEPTION)\b", re.IGNORECASE)
_WARNING_WORDS = re.compile(r"\bWARN(ING)?\b", re.IGNORECASE)

_SIZE_UNITS = {
    # Longest suffixes first so "kB" is not read as "B"
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
    "TiB": 1024**4,
    "kB": 1000,
    "KB": 1000,
    "MB": 1000**2,
    "GB": 1000**3,
    "TB": 1000**4,
    "B": 1,
}


class RemoteContainerDriver:
    """Translate container intents into remote docker invocations.

    Every remote call retries a transport failure once on a fresh session.
    Logical outcomes (non-zero exits) are interpreted, never retried.
    """

    def __init__(
        self,
        config: EngineConfig,
        executor: CommandExecutor,
        ports: PortAllocator,
        builder: DockerCommandBuilder | None = None,
    ):
        self.config = config
        self.settings = config.settings
        self.executor = executor
        self.ports = ports
        self.builder = builder or DockerCommandBuilder()

    def _host(self, host_id: str) -> RemoteHostConfig:
        return self.config.get_host(host_id)[1]

    async def _run(
        self,
        host_id: str,
        command: RemoteCommand,
        deadline: Deadline,
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute with one retry on transport-classified failures."""
        host = self._host(host_id)
        try:
            return await self.executor.execute(host, command, deadline, timeout)
        except RETRYABLE_ERRORS as e:
            if deadline.expired:
                raise
            logger.warning(
                "Transport failure, retrying once with a fresh session",
                host_id=host_id,
                action=command.action,
                error=str(e),
            )
        return await self.executor.execute(host, command, deadline, timeout)

    # ---- Ports ---------------------------------------------------------------

    async def allocate_port(self, host_id: str) -> int:
        """Reserve a free host port; call ``release_port`` once it is persisted."""
        return await self.ports.reserve(host_id, self._host(host_id))

    async def release_port(self, host_id: str, port: int) -> None:
        await self.ports.release(host_id, port)

    # ---- Lifecycle -----------------------------------------------------------

    async def create_container(
        self, host_id: str, spec: ContainerSpec, deadline: Deadline
    ) -> ContainerHandle:
        """Run the container, treating an existing one with the same name as success.

        When ``spec.host_port`` is empty a port is reserved here and stays
        reserved until the caller releases it.
        """
        host_port = spec.host_port
        if host_port is None:
            host_port = await self.allocate_port(host_id)

        command = self.builder.run_container(
            name=spec.name,
            image=spec.image,
            host_port=host_port,
            container_port=spec.container_port,
            environment=spec.environment,
            labels=spec.labels,
            server_args=spec.server_args,
            secret_env=set(spec.secret_env),
            secret_server_args=set(spec.secret_server_args),
        )
        handle = ContainerHandle(host_id=host_id, name=spec.name, port=host_port)

        try:
            result = await self._run(
                host_id, command, deadline, timeout=deadline.cap(self.settings.provision_timeout)
            )
            if not result.ok:
                if not _NAME_CONFLICT.search(result.stderr):
                    raise ProvisioningError(
                        f"docker run failed for {spec.name} (exit {result.exit_code}): "
                        f"{_first_line(result.stderr)}",
                        instance_id=spec.instance_id,
                    )
                await self._adopt_existing(handle, deadline, spec.instance_id)
        except BaseException:
            if spec.host_port is None:
                await self.release_port(host_id, host_port)
            raise

        logger.info("Container created", host_id=host_id, container=spec.name, port=host_port)
        return handle

    async def _adopt_existing(self, handle: ContainerHandle, deadline: Deadline, instance_id: str) -> None:
        state = await self.container_state(handle, deadline)
        if state is None:
            raise ProvisioningError(
                f"docker reported a name conflict for {handle.name} but no such container exists",
                instance_id=instance_id,
            )
        logger.info(
            "Container already exists, treating create as done",
            host_id=handle.host_id,
            container=handle.name,
            state=state,
        )
        if state != "running":
            await self.start_container(handle, deadline)

    async def start_container(self, handle: ContainerHandle, deadline: Deadline) -> None:
        result = await self._run(handle.host_id, self.builder.start_container(handle.name), deadline)
        if not result.ok:
            raise ProvisioningError(
                f"docker start failed for {handle.name}: {_first_line(result.stderr)}"
            )
        logger.info("Container started", host_id=handle.host_id, container=handle.name)

    async def stop_container(self, handle: ContainerHandle, deadline: Deadline) -> None:
        result = await self._run(handle.host_id, self.builder.stop_container(handle.name), deadline)
        if not result.ok:
            raise ProvisioningError(
                f"docker stop failed for {handle.name}: {_first_line(result.stderr)}"
            )
        logger.info("Container stopped", host_id=handle.host_id, container=handle.name)

    async def remove_container(self, handle: ContainerHandle, deadline: Deadline) -> None:
        """Force-remove the container; an already missing container is success."""
        result = await self._run(handle.host_id, self.builder.remove_container(handle.name), deadline)
        if not result.ok:
            if _NO_SUCH_CONTAINER.search(result.stderr) or _REMOVAL_IN_PROGRESS.search(result.stderr):
                logger.info(
                    "Container already removed", host_id=handle.host_id, container=handle.name
                )
                return
            raise ProvisioningError(
                f"docker rm failed for {handle.name}: {_first_line(result.stderr)}"
            )
        logger.info("Container removed", host_id=handle.host_id, container=handle.name)

    async def container_state(self, handle: ContainerHandle, deadline: Deadline) -> str | None:
        """Docker state string (``running``, ``exited``...), or None if absent."""
        result = await self._run(handle.host_id, self.builder.inspect_state(handle.name), deadline)
        if not result.ok:
            if _NO_SUCH_CONTAINER.search(result.stderr):
                return None
            raise ProvisioningError(
                f"docker inspect failed for {handle.name}: {_first_line(result.stderr)}"
            )
        return result.stdout.strip().lower() or None

    async def exec_in_container(
        self,
        handle: ContainerHandle,
        argv: list[str],
        deadline: Deadline,
        secret_values: tuple[str, ...] = (),
    ) -> CommandResult:
        """Run an argument vector inside the container.

        Arguments containing any of ``secret_values`` are masked in logs.
        """
        secret_args = {
            index
            for index, arg in enumerate(argv)
            if any(secret and secret in arg for secret in secret_values)
        }
        command = self.builder.exec_in_container(handle.name, argv, secret_args)
        return await self._run(handle.host_id, command, deadline)

    async def wait_until_ready(
        self,
        handle: ContainerHandle,
        readiness_argv: list[str],
        deadline: Deadline,
        secret_values: tuple[str, ...] = (),
    ) -> None:
        """Poll until the container is running and its readiness probe exits 0.

        Raises:
            ProvisioningError: The container died, or attempts or the deadline ran out
        """
        interval = self.settings.ready_poll_interval
        for attempt in range(1, self.settings.ready_max_attempts + 1):
            state = await self.container_state(handle, deadline)
            if state in (None, "exited", "dead"):
                raise ProvisioningError(
                    f"Container {handle.name} is {state or 'missing'} while waiting for readiness"
                )
            if state == "running":
                result = await self.exec_in_container(handle, readiness_argv, deadline, secret_values)
                if result.ok:
                    logger.info(
                        "Container ready", host_id=handle.host_id, container=handle.name, attempts=attempt
                    )
                    return
            logger.debug(
                "Container not ready yet", container=handle.name, attempt=attempt, state=state
            )
            remaining = deadline.remaining()
            if remaining is not None and remaining <= interval:
                break
            await asyncio.sleep(interval)

        raise ProvisioningError(f"Container {handle.name} did not become ready in time")

    # ---- Observation ---------------------------------------------------------

    async def read_stats(
        self, handle: ContainerHandle, instance_id: str, deadline: Deadline | None = None
    ) -> StatsSnapshot:
        deadline = deadline or Deadline.after(self.settings.command_timeout)
        result = await self._run(handle.host_id, self.builder.stats(handle.name), deadline)
        if not result.ok:
            raise ProvisioningError(
                f"docker stats failed for {handle.name}: {_first_line(result.stderr)}",
                instance_id=instance_id,
            )
        line = next((ln for ln in result.stdout.splitlines() if ln.strip()), "")
        try:
            raw: dict[str, Any] = json.loads(line)
        except json.JSONDecodeError as e:
            raise ProvisioningError(
                f"Unreadable docker stats output for {handle.name}", instance_id=instance_id
            ) from e
        return parse_stats(raw, instance_id, handle.name)

    async def read_logs(
        self,
        handle: ContainerHandle,
        since: datetime | str | None = None,
        tail: int | None = None,
        deadline: Deadline | None = None,
    ) -> list[LogEntry]:
        deadline = deadline or Deadline.after(self.settings.command_timeout)
        command = self.builder.logs(handle.name, tail=tail or self.settings.log_tail_lines, since=since)
        result = await self._run(handle.host_id, command, deadline)
        if not result.ok:
            raise ProvisioningError(
                f"docker logs failed for {handle.name}: {_first_line(result.stderr)}"
            )
        # Container stderr arrives on the SSH stderr channel; merge by timestamp
        entries = [parse_log_line(line, "stdout") for line in result.stdout.splitlines() if line.strip()]
        entries += [parse_log_line(line, "stderr") for line in result.stderr.splitlines() if line.strip()]
        floor = datetime.min.replace(tzinfo=timezone.utc)
        entries.sort(key=lambda entry: entry.timestamp or floor)
        return entries


def parse_stats(raw: dict[str, Any], instance_id: str, container_name: str) -> StatsSnapshot:
    """Convert one ``docker stats --format '{{json .}}'`` object."""
    mem_usage, mem_limit = _parse_pair(raw.get("MemUsage", ""))
    net_rx, net_tx = _parse_pair(raw.get("NetIO", ""))
    block_read, block_write = _parse_pair(raw.get("BlockIO", ""))
    return StatsSnapshot(
        instance_id=instance_id,
        container_name=container_name,
        cpu_percent=_parse_percentage(raw.get("CPUPerc", "")),
        memory_usage_mb=_to_mb(mem_usage),
        memory_limit_mb=_to_mb(mem_limit),
        memory_percent=_parse_percentage(raw.get("MemPerc", "")),
        network_rx_bytes=net_rx,
        network_tx_bytes=net_tx,
        block_read_bytes=block_read,
        block_write_bytes=block_write,
        pids=_parse_int(raw.get("PIDs", "")),
    )


def parse_log_line(line: str, stream: str) -> LogEntry:
    """Split a ``docker logs --timestamps`` line and infer its severity."""
    timestamp = None
    message = line
    match = _LOG_LINE.match(line)
    if match:
        message = match.group("msg")
        timestamp = _parse_log_timestamp(match.group("ts"), match.group("frac"), match.group("tz"))
    return LogEntry(timestamp=timestamp, level=infer_level(message), message=message, stream=stream)


def infer_level(message: str) -> LogLevel:
    if _ERROR_WORDS.search(message):
        return LogLevel.ERROR
    if _WARNING_WORDS.search(message):
        return LogLevel.WARNING
    return LogLevel.INFO


def _parse_log_timestamp(base: str, frac: str | None, tz: str | None) -> datetime | None:
    try:
        parsed = datetime.strptime(base, "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    # docker prints nanoseconds; datetime keeps microseconds
    if frac:
        parsed = parsed.replace(microsecond=int(frac[:6].ljust(6, "0")))
    if tz and tz != "Z":
        sign = 1 if tz[0] == "+" else -1
        hours, minutes = int(tz[1:3]), int(tz[4:6])
        offset = timezone(sign * timedelta(hours=hours, minutes=minutes))
        return parsed.replace(tzinfo=offset).astimezone(timezone.utc)
    return parsed.replace(tzinfo=timezone.utc)


def _parse_size(size_str: str) -> int | None:
    """Parse size string like '1.5GiB' to bytes."""
    try:
        size_str = size_str.strip()
        if not size_str or size_str == "--":
            return None
        if size_str == "0":
            return 0

        for unit, multiplier in _SIZE_UNITS.items():
            if size_str.endswith(unit):
                value = float(size_str[: -len(unit)])
                return int(value * multiplier)

        # If no unit, assume bytes
        return int(float(size_str))
    except (ValueError, AttributeError):
        return None


def _parse_pair(pair: str) -> tuple[int | None, int | None]:
    """Parse 'used / total' strings such as '12MiB / 1.9GiB'."""
    parts = pair.split(" / ") if isinstance(pair, str) else []
    if len(parts) != 2:
        return None, None
    return _parse_size(parts[0]), _parse_size(parts[1])


def _parse_percentage(value: str) -> float | None:
    try:
        return float(str(value).strip().rstrip("%"))
    except ValueError:
        return None


def _parse_int(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _to_mb(value: int | None) -> float | None:
    return None if value is None else round(value / (1024 * 1024), 2)


def _first_line(text: str) -> str:
    return next((line.strip() for line in text.splitlines() if line.strip()), "no output")
