"""Command template safety for remote execution."""

from dbaas_engine.core.security.command_builder import DockerCommandBuilder, RemoteCommand

__all__ = [
    "DockerCommandBuilder",
    "RemoteCommand",
]
