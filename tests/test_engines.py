"""Tests for engine adapters and the engine catalog."""

import pytest

from dbaas_engine.core.exceptions import UnsupportedEngineError
from dbaas_engine.core.security.command_builder import DockerCommandBuilder
from dbaas_engine.services.engines import (
    database_name_for,
    get_adapter,
    list_adapters,
    normalize_engine,
)

PASSWORD = "Abc123def456GHI789jkl012"


class TestCatalog:
    @pytest.mark.parametrize(
        "engine, expected",
        [
            ("postgresql", "postgresql"),
            ("Postgres", "postgresql"),
            ("pg", "postgresql"),
            ("mysql", "mysql"),
            ("mongo", "mongodb"),
            ("redis", "redis"),
            ("SQL Server", "mssql"),
            ("sqlserver", "mssql"),
            (" cassandra ", "cassandra"),
        ],
    )
    def test_normalize_engine(self, engine, expected):
        assert normalize_engine(engine) == expected

    @pytest.mark.parametrize("engine", ["oracle", "", "postgres; rm -rf /"])
    def test_unknown_engine(self, engine):
        with pytest.raises(UnsupportedEngineError, match="Supported"):
            get_adapter(engine)

    def test_six_engines(self):
        assert {a.engine_name for a in list_adapters()} == {
            "postgresql",
            "mysql",
            "mongodb",
            "redis",
            "mssql",
            "cassandra",
        }


class TestDatabaseName:
    def test_default_name_from_instance_id(self):
        assert database_name_for("6F1c-22ab-9999-0000-1111") == "db_6f1c22ab9999"

    def test_custom_name_is_sanitized(self):
        assert database_name_for("x", "My Shop!") == "my_shop"

    def test_leading_digit_gets_prefix(self):
        assert database_name_for("x", "2024_sales") == "db_2024_sales"

    def test_unusable_custom_name_falls_back(self):
        assert database_name_for("abc", "!!!") == "db_abc"


@pytest.mark.parametrize("adapter", list_adapters(), ids=lambda a: a.engine_name)
class TestAdapters:
    def test_container_config_builds_a_valid_command(self, adapter):
        username = adapter.username_for("inst-1")
        config = adapter.get_container_config("db_inst1", username, PASSWORD)

        command = DockerCommandBuilder().run_container(
            name=f"dbaas-{adapter.engine_name}-inst-1",
            image=config.image,
            host_port=10000,
            container_port=config.container_port,
            environment=config.env_vars,
            server_args=config.command,
            secret_env=config.secret_env,
            secret_server_args=config.secret_command_args,
        )

        assert config.container_port == adapter.default_port
        assert PASSWORD not in command.describe()

    def test_readiness_command_is_argv(self, adapter):
        argv = adapter.get_readiness_command("db_inst1", adapter.username_for("inst-1"), PASSWORD)

        assert argv
        assert all(isinstance(part, str) for part in argv)

    def test_rotation_command_matches_capability(self, adapter):
        argv = adapter.get_rotate_password_command("db_inst1", "user_inst1", PASSWORD, "New0Password")

        if adapter.supports_rotation:
            assert any("New0Password" in part for part in argv)
        else:
            assert argv == []

    def test_connection_details(self, adapter):
        samples = adapter.get_sample_connections("db.example.com", 10000, "db_inst1", "u", PASSWORD)

        assert "db.example.com" in samples["connection_string"]
        assert "10000" in samples["connection_string"]


def test_fixed_usernames():
    assert get_adapter("redis").username_for("inst-1") == "default"
    assert get_adapter("mssql").username_for("inst-1") == "sa"
    assert get_adapter("postgresql").username_for("inst-1") == "user_inst1"
