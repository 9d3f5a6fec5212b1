"""Parameterized remote command templates with injection protection."""

import re
import shlex
from dataclasses import dataclass, field
from datetime import datetime

from ..exceptions import CommandSecurityError

REDACTED = "***"


@dataclass(frozen=True)
class RemoteCommand:
    """A command line held as an argument vector, never as a raw shell string.

    ``secret_args`` holds indexes of arguments that carry generated secrets;
    they are masked in ``describe()`` so logs never see them. ``stdin`` is fed
    to the remote process and never appears on its command line.
    """

    argv: tuple[str, ...]
    secret_args: frozenset[int] = field(default_factory=frozenset)
    stdin: str | None = field(default=None, repr=False)

    def render(self) -> str:
        """Shell-escaped command line sent to the remote host."""
        return " ".join(shlex.quote(arg) for arg in self.argv)

    def describe(self) -> str:
        """Command line safe for logging."""
        return " ".join(
            REDACTED if index in self.secret_args else shlex.quote(arg)
            for index, arg in enumerate(self.argv)
        )

    @property
    def action(self) -> str:
        """Short label such as ``docker run`` for log events."""
        return " ".join(self.argv[:2])


class DockerCommandBuilder:
    """Builds docker commands from validated template parameters."""

    VALID_CONTAINER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,127}$")
    VALID_IMAGE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._/:@-]{0,254}$")
    VALID_ENV_VAR_NAME = re.compile(r"^[A-Z][A-Z0-9_]{0,63}$")
    VALID_LABEL_KEY = re.compile(r"^[a-z0-9][a-z0-9._-]{0,127}$")
    VALID_RELATIVE_SINCE = re.compile(r"^\d{1,6}[smh]$")

    # Control characters never belong in a parameter, quoted or not
    FORBIDDEN_VALUE_CHARS = re.compile(r"[\x00-\x1f\x7f]")

    ALLOWED_DOCKER_COMMANDS = {"run", "start", "stop", "rm", "inspect", "stats", "logs", "exec"}

    def __init__(self, max_command_length: int = 8192):
        """Initialize the command builder.

        Args:
            max_command_length: Maximum allowed rendered command length
        """
        self.max_command_length = max_command_length

    def validate_container_name(self, name: str) -> str:
        if not name or not self.VALID_CONTAINER_NAME_PATTERN.match(name):
            raise CommandSecurityError(f"Invalid container name: {name!r}")
        return name

    def validate_image(self, image: str) -> str:
        if not image or not self.VALID_IMAGE_PATTERN.match(image):
            raise CommandSecurityError(f"Invalid image reference: {image!r}")
        return image

    def validate_port(self, port: int) -> int:
        if isinstance(port, bool) or not isinstance(port, int) or port < 1 or port > 65535:
            raise CommandSecurityError(f"Invalid port: {port!r}")
        return port

    def validate_value(self, value: str, what: str = "value") -> str:
        if not isinstance(value, str):
            raise CommandSecurityError(f"Invalid {what}: expected string")
        if self.FORBIDDEN_VALUE_CHARS.search(value):
            raise CommandSecurityError(f"Invalid {what}: contains control characters")
        if len(value) > 4096:
            raise CommandSecurityError(f"Invalid {what}: too long")
        return value

    def validate_environment_variable(self, key: str, value: str) -> tuple[str, str]:
        if not key or not self.VALID_ENV_VAR_NAME.match(key):
            raise CommandSecurityError(f"Invalid environment variable name: {key!r}")
        return key, self.validate_value(value, f"value for {key}")

    def validate_label(self, key: str, value: str) -> tuple[str, str]:
        if not key or not self.VALID_LABEL_KEY.match(key):
            raise CommandSecurityError(f"Invalid label key: {key!r}")
        return key, self.validate_value(value, f"label {key}")

    def validate_since(self, since: datetime | str) -> str:
        """Accept a datetime or a relative duration such as ``10m``."""
        if isinstance(since, datetime):
            return since.isoformat()
        if isinstance(since, str) and self.VALID_RELATIVE_SINCE.match(since):
            return since
        raise CommandSecurityError(f"Invalid since value: {since!r}")

    def _docker(
        self,
        subcommand: str,
        args: list[str],
        secret_args: set[int] | None = None,
        stdin: str | None = None,
    ) -> RemoteCommand:
        if subcommand not in self.ALLOWED_DOCKER_COMMANDS:
            raise CommandSecurityError(f"Docker command not allowed: {subcommand}")
        # Offsets shift by two for the leading "docker <subcommand>"
        command = RemoteCommand(
            argv=("docker", subcommand, *args),
            secret_args=frozenset(index + 2 for index in (secret_args or set())),
            stdin=stdin,
        )
        rendered_length = len(command.render())
        if rendered_length > self.max_command_length:
            raise CommandSecurityError(
                f"Command too long: {rendered_length} > {self.max_command_length}"
            )
        return command

    def run_container(
        self,
        name: str,
        image: str,
        host_port: int,
        container_port: int,
        environment: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
        server_args: list[str] | None = None,
        secret_env: set[str] | None = None,
        secret_server_args: set[int] | None = None,
        restart_policy: str = "unless-stopped",
    ) -> RemoteCommand:
        """``docker run -d`` with a published port and injected credentials.

        Variables named in ``secret_env`` are written to the command's stdin
        and read back with ``--env-file /dev/stdin``, so their values never
        show up in the remote host's process list.
        """
        args = [
            "-d",
            "--name",
            self.validate_container_name(name),
            "--restart",
            restart_policy,
            "-p",
            f"0.0.0.0:{self.validate_port(host_port)}:{self.validate_port(container_port)}",
        ]
        secret_args: set[int] = set()
        env_file: list[str] = []
        for key, value in (labels or {}).items():
            key, value = self.validate_label(key, value)
            args.extend(["--label", f"{key}={value}"])
        for key, value in (environment or {}).items():
            key, value = self.validate_environment_variable(key, value)
            if key in (secret_env or set()):
                env_file.append(f"{key}={value}")
            else:
                args.extend(["-e", f"{key}={value}"])
        if env_file:
            args.extend(["--env-file", "/dev/stdin"])
        args.append(self.validate_image(image))
        for index, value in enumerate(server_args or []):
            if index in (secret_server_args or set()):
                secret_args.add(len(args))
            args.append(self.validate_value(value, "server argument"))
        stdin = "".join(f"{line}\n" for line in env_file) or None
        return self._docker("run", args, secret_args, stdin=stdin)

    def start_container(self, name: str) -> RemoteCommand:
        return self._docker("start", [self.validate_container_name(name)])

    def stop_container(self, name: str, grace_seconds: int = 10) -> RemoteCommand:
        return self._docker(
            "stop", ["--time", str(int(grace_seconds)), self.validate_container_name(name)]
        )

    def remove_container(self, name: str) -> RemoteCommand:
        return self._docker("rm", ["-f", "-v", self.validate_container_name(name)])

    def inspect_state(self, name: str) -> RemoteCommand:
        return self._docker(
            "inspect",
            ["--format", "{{.State.Status}}", self.validate_container_name(name)],
        )

    def stats(self, name: str) -> RemoteCommand:
        return self._docker(
            "stats",
            ["--no-stream", "--format", "{{json .}}", self.validate_container_name(name)],
        )

    def logs(self, name: str, tail: int = 200, since: datetime | str | None = None) -> RemoteCommand:
        if isinstance(tail, bool) or not isinstance(tail, int) or tail < 1 or tail > 10000:
            raise CommandSecurityError(f"Invalid tail value: {tail!r}")
        args = ["--timestamps", "--tail", str(tail)]
        if since is not None:
            args.extend(["--since", self.validate_since(since)])
        args.append(self.validate_container_name(name))
        return self._docker("logs", args)

    def exec_in_container(
        self, name: str, argv: list[str], secret_args: set[int] | None = None
    ) -> RemoteCommand:
        """``docker exec`` with an argument vector run inside the container."""
        if not argv:
            raise CommandSecurityError("Empty exec command")
        args = [self.validate_container_name(name)]
        offset = len(args)
        args.extend(self.validate_value(part, "exec argument") for part in argv)
        return self._docker(
            "exec", args, {index + offset for index in (secret_args or set())}
        )

    @staticmethod
    def probe() -> RemoteCommand:
        """No-op command used to validate a session."""
        return RemoteCommand(argv=("true",))
