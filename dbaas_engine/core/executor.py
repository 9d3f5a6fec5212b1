"""Run remote commands over pooled SSH sessions."""

import asyncio
import hashlib
import socket
import time
from dataclasses import dataclass

import structlog

from .config_loader import RemoteHostConfig
from .deadline import Deadline
from .exceptions import CommandError, CommandErrorKind
from .logging_config import get_audit_logger
from .security.command_builder import RemoteCommand
from .ssh_pool import TRANSPORT_EXCEPTIONS, Session, SessionPoolRegistry

logger = structlog.get_logger()


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a command that ran to completion, whatever its exit code."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined output, useful when matching docker error messages."""
        return f"{self.stdout}\n{self.stderr}".strip()


def command_fingerprint(command: RemoteCommand) -> str:
    """Stable short hash identifying a command line without revealing it."""
    return hashlib.sha256(command.render().encode("utf-8")).hexdigest()[:16]


class CommandExecutor:
    """Execute ``RemoteCommand`` templates on a borrowed session.

    Transport trouble and timeouts surface as ``CommandError`` and the session
    is invalidated. A non-zero exit is returned as a normal ``CommandResult``.
    """

    def __init__(self, pools: SessionPoolRegistry, default_timeout: float = 30.0):
        self.pools = pools
        self.default_timeout = default_timeout
        self.audit = get_audit_logger()

    def _exec_blocking(
        self, session: Session, rendered: str, input_data: str | None, timeout: float | None
    ) -> CommandResult:
        stdin, stdout, stderr = session.client.exec_command(rendered, timeout=timeout, get_pty=False)
        if input_data is not None:
            stdin.write(input_data)
            stdin.flush()
            # EOF tells the remote reader its input is complete
            stdin.channel.shutdown_write()
        stdin.close()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        exit_code = stdout.channel.recv_exit_status()
        return CommandResult(exit_code=exit_code, stdout=out, stderr=err)

    async def run(
        self,
        session: Session,
        command: RemoteCommand,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command on an already borrowed session.

        The caller still owns the session afterwards unless a ``CommandError``
        was raised, in which case the session has been invalidated.
        """
        timeout = timeout if timeout is not None else self.default_timeout
        rendered = command.render()
        loop = asyncio.get_running_loop()
        started = time.monotonic()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(
                    None, self._exec_blocking, session, rendered, command.stdin, timeout
                ),
                timeout,
            )
        except (asyncio.TimeoutError, socket.timeout) as e:
            self._audit(session.host, command, started, error=CommandErrorKind.TIMEOUT)
            await self.pools.invalidate(session)
            raise CommandError(
                CommandErrorKind.TIMEOUT,
                f"'{command.action}' on {session.host.hostname} timed out after {timeout}s",
            ) from e
        except TRANSPORT_EXCEPTIONS as e:
            self._audit(session.host, command, started, error=CommandErrorKind.TRANSPORT)
            await self.pools.invalidate(session)
            raise CommandError(
                CommandErrorKind.TRANSPORT,
                f"'{command.action}' on {session.host.hostname} failed: {e}",
            ) from e

        self._audit(session.host, command, started, exit_code=result.exit_code)
        return result

    async def execute(
        self,
        host: RemoteHostConfig,
        command: RemoteCommand,
        deadline: Deadline | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Borrow a session, run one command and give the session back."""
        deadline = deadline or Deadline.never()
        timeout = deadline.cap(timeout if timeout is not None else self.default_timeout)
        if timeout is not None and timeout <= 0:
            raise CommandError(
                CommandErrorKind.TIMEOUT, f"Deadline expired before '{command.action}' started"
            )

        session = await self.pools.acquire(host, deadline)
        try:
            result = await self.run(session, command, timeout)
        except CommandError:
            # Already invalidated
            raise
        except BaseException:
            await self.pools.invalidate(session)
            raise
        await self.pools.release(session)
        return result

    def _audit(
        self,
        host: RemoteHostConfig,
        command: RemoteCommand,
        started: float,
        exit_code: int | None = None,
        error: CommandErrorKind | None = None,
    ) -> None:
        self.audit.info(
            "Remote command",
            host=host.hostname,
            user=host.user,
            action=command.action,
            command_sha256=command_fingerprint(command),
            command_length=len(command.render()),
            exit_code=exit_code,
            error=error.value if error else None,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
