"""Container-related data models."""

from datetime import datetime
from typing import Literal

from pydantic import ConfigDict, Field

from .enums import LogLevel
from .instance import EngineModel, utcnow


class ContainerSpec(EngineModel):
    """Everything the driver needs for one ``docker run``."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    name: str
    image: str
    container_port: int
    host_port: int | None = None  # Chosen by the driver when not given
    environment: dict[str, str] = Field(default_factory=dict, repr=False)
    labels: dict[str, str] = Field(default_factory=dict)
    server_args: list[str] = Field(default_factory=list, repr=False)
    secret_env: frozenset[str] = Field(default_factory=frozenset)
    secret_server_args: frozenset[int] = Field(default_factory=frozenset)


class ContainerHandle(EngineModel):
    """Reference to a container on a remote host."""

    model_config = ConfigDict(frozen=True)

    host_id: str
    name: str
    port: int | None = None


class StatsSnapshot(EngineModel):
    """Point-in-time resource readings for a container."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    container_name: str
    cpu_percent: float | None = None
    memory_usage_mb: float | None = None
    memory_limit_mb: float | None = None
    memory_percent: float | None = None
    network_rx_bytes: int | None = None
    network_tx_bytes: int | None = None
    block_read_bytes: int | None = None
    block_write_bytes: int | None = None
    pids: int | None = None
    recorded_at: datetime = Field(default_factory=utcnow)


class LogEntry(EngineModel):
    """A single container log line with inferred severity."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime | None = None
    level: LogLevel = LogLevel.INFO
    message: str
    stream: Literal["stdout", "stderr"] = "stdout"
