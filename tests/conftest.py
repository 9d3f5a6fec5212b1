"""Shared pytest fixtures for provisioning engine tests."""

import asyncio
import json
import logging
from collections import defaultdict
from unittest.mock import MagicMock

import pytest
import structlog
from paramiko import SSHClient

from dbaas_engine.core.config_loader import EngineConfig, RemoteHostConfig
from dbaas_engine.core.executor import CommandResult
from dbaas_engine.core.security.command_builder import RemoteCommand
from dbaas_engine.core.settings import EngineSettings
from dbaas_engine.models.enums import InstanceStatus
from dbaas_engine.models.instance import InstanceEvent, InstanceRecord
from dbaas_engine.services.driver import RemoteContainerDriver
from dbaas_engine.services.lifecycle import InstanceLifecycleManager
from dbaas_engine.services.notifications import NotificationDispatcher
from dbaas_engine.services.ports import PortAllocator


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo any logging configuration a test installed."""
    yield
    structlog.reset_defaults()
    for name in ("engine", "audit"):
        named = logging.getLogger(name)
        for handler in list(named.handlers):
            named.removeHandler(handler)
            handler.close()
    logging.getLogger().handlers.clear()


@pytest.fixture
def host_config() -> RemoteHostConfig:
    """A single managed host with a small port range."""
    return RemoteHostConfig(
        hostname="db-host.example.com",
        user="deploy",
        password="ssh-secret",
        port=22,
        public_host="db.example.com",
        connect_timeout=2.0,
        read_timeout=2.0,
        max_pool_size=2,
        port_range_start=10000,
        port_range_end=10009,
    )


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(
        command_timeout=5.0,
        provision_timeout=10.0,
        transition_timeout=5.0,
        acquire_timeout=1.0,
        ready_poll_interval=0.01,
        ready_max_attempts=5,
    )


@pytest.fixture
def engine_config(host_config, engine_settings) -> EngineConfig:
    return EngineConfig(
        hosts={"primary": host_config},
        default_host="primary",
        settings=engine_settings,
    )


def make_ssh_client(active: bool = True, exit_status: int = 0) -> MagicMock:
    """Mock paramiko client whose transport reports ``active``."""
    client = MagicMock(spec=SSHClient)
    transport = MagicMock()
    transport.is_active.return_value = active
    client.get_transport.return_value = transport

    stdin, stdout, stderr = MagicMock(), MagicMock(), MagicMock()
    stdout.read.return_value = b""
    stderr.read.return_value = b""
    stdout.channel.recv_exit_status.return_value = exit_status
    client.exec_command.return_value = (stdin, stdout, stderr)
    return client


@pytest.fixture
def mock_ssh_client() -> MagicMock:
    return make_ssh_client()


class InMemoryRepository:
    """Persistence collaborator backed by dicts."""

    def __init__(self):
        self.records: dict[str, InstanceRecord] = {}
        self.credentials: dict[str, tuple[str, str]] = {}
        self.saves: list[InstanceRecord] = []
        self.fail_saves_with_status: set[InstanceStatus] = set()

    async def load_instance(self, instance_id: str) -> InstanceRecord | None:
        return self.records.get(instance_id)

    async def save_instance(self, record: InstanceRecord) -> None:
        if record.status in self.fail_saves_with_status:
            raise RuntimeError(f"database unavailable while saving {record.status.value}")
        self.saves.append(record)
        self.records[record.id] = record

    async def is_port_in_use(self, host_id: str, port: int) -> bool:
        return any(
            r.host_id == host_id and r.port == port and r.status is not InstanceStatus.DELETED
            for r in self.records.values()
        )

    async def count_active_instances(self, user_id: str) -> int:
        return sum(
            1
            for r in self.records.values()
            if r.user_id == user_id and r.status is not InstanceStatus.DELETED
        )

    async def save_credential(self, instance_id: str, username: str, password_hash: str) -> None:
        self.credentials[instance_id] = (username, password_hash)


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


class RecordingNotifier:
    def __init__(self):
        self.events: list[InstanceEvent] = []

    async def emit(self, event: InstanceEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type.value for event in self.events]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


DEFAULT_STATS = {
    "BlockIO": "4.1MB / 12.3MB",
    "CPUPerc": "1.50%",
    "MemPerc": "6.25%",
    "MemUsage": "64MiB / 1GiB",
    "Name": "ignored",
    "NetIO": "1.2kB / 3MB",
    "PIDs": "7",
}


class FakeDockerHost:
    """Scripted stand-in for ``CommandExecutor`` that emulates a docker host.

    ``failures`` and ``overrides`` are per-subcommand queues consumed before
    the emulation runs, so tests can inject transport errors or odd exits.
    """

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.calls: list[RemoteCommand] = []
        self.failures: dict[str, list[BaseException]] = defaultdict(list)
        self.overrides: dict[str, list[CommandResult]] = defaultdict(list)
        self.ready_after = 1
        self.exec_calls = 0
        self.exec_exit_code = 0
        self.delay = 0.0
        self.stats = dict(DEFAULT_STATS)
        self.log_stdout = ""
        self.log_stderr = ""

    def count(self, subcommand: str) -> int:
        return sum(1 for call in self.calls if call.argv[1] == subcommand)

    async def execute(self, host, command: RemoteCommand, deadline=None, timeout=None) -> CommandResult:
        self.calls.append(command)
        if self.delay:
            await asyncio.sleep(self.delay)
        subcommand = command.argv[1]
        if self.failures[subcommand]:
            raise self.failures[subcommand].pop(0)
        if self.overrides[subcommand]:
            return self.overrides[subcommand].pop(0)
        if subcommand == "run":
            return self._run(list(command.argv[2:]), command.stdin)
        return getattr(self, f"_{subcommand}")(list(command.argv[2:]))

    def add_container(self, name: str, state: str = "running", port: int = 10000) -> None:
        self.containers[name] = {"state": state, "port": port, "env": {}, "image": "postgres:16"}

    @staticmethod
    def _missing(name: str) -> CommandResult:
        return CommandResult(1, "", f"Error response from daemon: No such container: {name}\n")

    def _run(self, args: list[str], stdin: str | None = None) -> CommandResult:
        name = args[args.index("--name") + 1]
        if name in self.containers:
            return CommandResult(
                125,
                "",
                "docker: Error response from daemon: Conflict. The container name "
                f'"/{name}" is already in use by container "0123abcd".\n',
            )
        port = int(args[args.index("-p") + 1].split(":")[1])
        env = dict(args[i + 1].split("=", 1) for i, arg in enumerate(args) if arg == "-e")
        if "--env-file" in args:
            env.update(line.split("=", 1) for line in (stdin or "").splitlines())
        self.containers[name] = {"state": "running", "port": port, "env": env, "args": args}
        return CommandResult(0, "0123abcd\n", "")

    def _start(self, args: list[str]) -> CommandResult:
        name = args[-1]
        if name not in self.containers:
            return self._missing(name)
        self.containers[name]["state"] = "running"
        return CommandResult(0, f"{name}\n", "")

    def _stop(self, args: list[str]) -> CommandResult:
        name = args[-1]
        if name not in self.containers:
            return self._missing(name)
        self.containers[name]["state"] = "exited"
        return CommandResult(0, f"{name}\n", "")

    def _rm(self, args: list[str]) -> CommandResult:
        name = args[-1]
        if name not in self.containers:
            return CommandResult(1, "", f"Error: No such container: {name}\n")
        del self.containers[name]
        return CommandResult(0, f"{name}\n", "")

    def _inspect(self, args: list[str]) -> CommandResult:
        name = args[-1]
        if name not in self.containers:
            return CommandResult(1, "[]\n", f"Error: No such object: {name}\n")
        return CommandResult(0, f"{self.containers[name]['state']}\n", "")

    def _stats(self, args: list[str]) -> CommandResult:
        name = args[-1]
        if name not in self.containers:
            return self._missing(name)
        return CommandResult(0, json.dumps({**self.stats, "Name": name}) + "\n", "")

    def _logs(self, args: list[str]) -> CommandResult:
        name = args[-1]
        if name not in self.containers:
            return self._missing(name)
        return CommandResult(0, self.log_stdout, self.log_stderr)

    def _exec(self, args: list[str]) -> CommandResult:
        name = args[0]
        container = self.containers.get(name)
        if container is None:
            return self._missing(name)
        if container["state"] != "running":
            return CommandResult(1, "", f"Error response from daemon: container {name} is not running\n")
        self.exec_calls += 1
        if self.exec_calls < self.ready_after:
            return CommandResult(1, "", "not ready\n")
        return CommandResult(self.exec_exit_code, "", "")


@pytest.fixture
def fake_docker() -> FakeDockerHost:
    return FakeDockerHost()


@pytest.fixture
def driver(engine_config, fake_docker, repository) -> RemoteContainerDriver:
    return RemoteContainerDriver(engine_config, fake_docker, PortAllocator(repository))


@pytest.fixture
def dispatcher(notifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier)


@pytest.fixture
def lifecycle(engine_config, driver, repository, dispatcher) -> InstanceLifecycleManager:
    return InstanceLifecycleManager(engine_config, driver, repository, dispatcher)
