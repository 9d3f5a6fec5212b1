"""Timeout and pool tuning for the provisioning engine.

Provides centralized timeout configuration using Pydantic BaseSettings
with environment variable support for operational tuning.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine-wide timeouts and pool behaviour."""

    command_timeout: float = Field(
        30.0, alias="DBAAS_COMMAND_TIMEOUT", description="Default remote command timeout in seconds"
    )

    provision_timeout: float = Field(
        300.0,
        alias="DBAAS_PROVISION_TIMEOUT",
        description="Overall deadline for a CREATING transition in seconds",
    )

    transition_timeout: float = Field(
        120.0,
        alias="DBAAS_TRANSITION_TIMEOUT",
        description="Deadline for suspend, resume and delete transitions in seconds",
    )

    acquire_timeout: float = Field(
        15.0, alias="DBAAS_ACQUIRE_TIMEOUT", description="Wait for a pooled session in seconds"
    )

    session_freshness: float = Field(
        60.0,
        alias="DBAAS_SESSION_FRESHNESS",
        description="Idle seconds after which a session is re-validated before reuse",
    )

    ready_poll_interval: float = Field(
        2.0, alias="DBAAS_READY_POLL_INTERVAL", description="Readiness poll interval in seconds"
    )

    ready_max_attempts: int = Field(
        60, alias="DBAAS_READY_MAX_ATTEMPTS", description="Readiness polls before giving up"
    )

    log_tail_lines: int = Field(
        200, alias="DBAAS_LOG_TAIL_LINES", description="Default number of log lines to read"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)
