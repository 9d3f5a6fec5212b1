"""Configuration management for the provisioning engine."""

import os
import re
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings

from .exceptions import ConfigurationError
from .settings import EngineSettings

logger = structlog.get_logger()

DEFAULT_CONFIG_FILE = "config/hosts.yml"


class RemoteHostConfig(BaseModel):
    """Connection settings for one managed remote host."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    user: str
    port: int = Field(default=22, ge=1, le=65535)
    password: SecretStr | None = None
    identity_file: str | None = None
    connect_timeout: float = Field(default=30.0, gt=0)
    read_timeout: float = Field(default=30.0, gt=0)
    max_pool_size: int = Field(default=5, ge=1)
    public_host: str | None = None  # Address disclosed to users; defaults to hostname
    port_range_start: int = Field(default=10000, ge=1, le=65535)
    port_range_end: int = Field(default=20000, ge=1, le=65535)

    @model_validator(mode="after")
    def _check_auth_and_range(self) -> "RemoteHostConfig":
        if self.password is None and not self.identity_file:
            raise ValueError("either password or identity_file is required")
        if self.port_range_start > self.port_range_end:
            raise ValueError("port_range_start must not exceed port_range_end")
        return self

    @property
    def key(self) -> str:
        """Unique key for pool bookkeeping."""
        return f"{self.user}@{self.hostname}:{self.port}"

    @property
    def advertised_host(self) -> str:
        return self.public_host or self.hostname


class EngineConfig(BaseSettings):
    """Main configuration for the provisioning engine."""

    hosts: dict[str, RemoteHostConfig] = Field(default_factory=dict)
    default_host: str | None = Field(default=None, alias="DBAAS_DEFAULT_HOST")
    settings: EngineSettings = Field(default_factory=EngineSettings)
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    config_file: str = Field(default=DEFAULT_CONFIG_FILE, alias="DBAAS_HOSTS_CONFIG")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    def get_host(self, host_id: str | None = None) -> tuple[str, RemoteHostConfig]:
        """Resolve a host id (or the default host) to its configuration."""
        host_id = host_id or self.default_host
        if host_id is None:
            if len(self.hosts) == 1:
                host_id = next(iter(self.hosts))
            else:
                raise ConfigurationError("No host id given and no default_host configured")
        if host_id not in self.hosts:
            raise ConfigurationError(f"Host '{host_id}' not found")
        return host_id, self.hosts[host_id]


def load_config(config_path: str | None = None) -> EngineConfig:
    """Load configuration from .env, a YAML file and environment overrides.

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If the file exists but cannot be parsed or validated
    """
    load_dotenv()

    config = EngineConfig()

    project_config_path = Path(
        config_path or os.getenv("DBAAS_HOSTS_CONFIG", DEFAULT_CONFIG_FILE)
    )
    if project_config_path.exists():
        yaml_config = _load_yaml_config(project_config_path)
        try:
            _apply_host_config(config, yaml_config)
            _apply_engine_settings(config, yaml_config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {project_config_path}: {e}") from e
        if yaml_config.get("default_host"):
            config.default_host = yaml_config["default_host"]

    config.config_file = str(project_config_path)
    _apply_env_overrides(config)

    if config.default_host and config.default_host not in config.hosts:
        raise ConfigurationError(f"default_host '{config.default_host}' is not a configured host")

    logger.info(
        "Configuration loaded",
        path=str(project_config_path),
        hosts=len(config.hosts),
        default_host=config.default_host,
    )
    return config


def _apply_host_config(config: EngineConfig, yaml_config: dict[str, Any]) -> None:
    """Apply host configuration from YAML data."""
    if "hosts" in yaml_config and yaml_config["hosts"]:
        for host_id, host_data in yaml_config["hosts"].items():
            config.hosts[host_id] = RemoteHostConfig(**host_data)


def _apply_engine_settings(config: EngineConfig, yaml_config: dict[str, Any]) -> None:
    """Apply timeout and pool tuning from YAML data."""
    settings_data = yaml_config.get("settings")
    if not settings_data:
        return
    merged = config.settings.model_dump()
    for key, value in settings_data.items():
        if key in merged:
            merged[key] = value
        else:
            logger.warning("Unknown engine setting ignored", setting=key)
    config.settings = EngineSettings(**merged)


def _apply_env_overrides(config: EngineConfig) -> None:
    """Apply environment variable overrides."""
    if default_host := os.getenv("DBAAS_DEFAULT_HOST"):
        config.default_host = default_host
    if os.getenv("LOG_LEVEL"):
        config.log_level = os.getenv("LOG_LEVEL", config.log_level)


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        content = config_path.read_text(encoding="utf-8")

        # Securely expand only allowed environment variables
        content = _expand_yaml_config(content)

        loaded = yaml.safe_load(content)
        if not isinstance(loaded, dict):
            return {}
        return loaded
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e


# Secrets such as SSH passwords are typically injected this way.
ALLOWED_ENV_VARS = {
    "HOME",
    "USER",
    "DBAAS_HOSTS_CONFIG",
    "DBAAS_SSH_USER",
    "DBAAS_SSH_PASSWORD",
    "DBAAS_SSH_KEY",
    "DBAAS_SSH_HOST",
    "DBAAS_PUBLIC_HOST",
}


def _expand_yaml_config(content: str) -> str:
    """Securely expand ``${VAR}`` references with an allowlist."""

    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        if var_name in ALLOWED_ENV_VARS:
            return os.getenv(var_name, match.group(0))
        logger.warning(
            "Environment variable not in allowlist, skipping expansion", variable=var_name
        )
        return match.group(0)

    return re.sub(r"\$\{([^}]+)\}", replace_var, content)
