"""Tests for command templates and parameter validation."""

from datetime import datetime, timezone

import pytest

from dbaas_engine.core.exceptions import CommandSecurityError
from dbaas_engine.core.security.command_builder import DockerCommandBuilder, RemoteCommand


@pytest.fixture
def builder():
    return DockerCommandBuilder()


class TestRemoteCommand:
    def test_render_quotes_every_argument(self):
        command = RemoteCommand(("echo", "a b", "$(id)"))

        assert command.render() == "echo 'a b' '$(id)'"

    def test_describe_masks_secret_arguments(self):
        command = RemoteCommand(("redis-server", "--requirepass", "hunter2"), frozenset({2}))

        assert command.describe() == "redis-server --requirepass ***"
        assert "hunter2" in command.render()

    def test_action_is_first_two_words(self):
        assert RemoteCommand(("docker", "stats", "--no-stream", "x")).action == "docker stats"


class TestDockerCommandBuilder:
    def test_run_container_layout(self, builder):
        command = builder.run_container(
            name="dbaas-postgresql-abc",
            image="postgres:16",
            host_port=10001,
            container_port=5432,
            environment={"POSTGRES_USER": "user_abc", "POSTGRES_PASSWORD": "pw"},
            labels={"dbaas.instance-id": "abc"},
            secret_env={"POSTGRES_PASSWORD"},
        )

        argv = command.argv
        assert argv[:4] == ("docker", "run", "-d", "--name")
        assert "0.0.0.0:10001:5432" in argv
        assert "dbaas.instance-id=abc" in argv
        assert argv[-1] == "postgres:16"
        assert "POSTGRES_USER=user_abc" in command.describe()

    def test_secret_env_is_passed_on_stdin(self, builder):
        command = builder.run_container(
            name="dbaas-postgresql-abc",
            image="postgres:16",
            host_port=10001,
            container_port=5432,
            environment={"POSTGRES_USER": "user_abc", "POSTGRES_PASSWORD": "Pw0value"},
            secret_env={"POSTGRES_PASSWORD"},
        )

        assert "Pw0value" not in command.render()
        assert "POSTGRES_PASSWORD" not in command.render()
        assert command.argv[-3:] == ("--env-file", "/dev/stdin", "postgres:16")
        assert command.stdin == "POSTGRES_PASSWORD=Pw0value\n"
        assert "Pw0value" not in repr(command)

    def test_no_stdin_without_secret_env(self, builder):
        command = builder.run_container(
            "dbaas-x", "postgres:16", 10000, 5432, environment={"POSTGRES_DB": "db"}
        )

        assert command.stdin is None
        assert "--env-file" not in command.argv

    def test_run_container_masks_secret_server_args(self, builder):
        command = builder.run_container(
            name="dbaas-redis-abc",
            image="redis:7.0",
            host_port=10002,
            container_port=6379,
            server_args=["redis-server", "--requirepass", "s3cret"],
            secret_server_args={2},
        )

        assert command.argv[-1] == "s3cret"
        assert command.describe().endswith("--requirepass ***")

    def test_shell_metacharacters_stay_inside_quotes(self, builder):
        command = builder.run_container(
            name="dbaas-mysql-abc",
            image="mysql:8.0",
            host_port=10003,
            container_port=3306,
            environment={"MYSQL_DATABASE": "db; rm -rf /"},
        )

        assert "'MYSQL_DATABASE=db; rm -rf /'" in command.render()

    @pytest.mark.parametrize(
        "name", ["", "-rf", "bad name", "x;reboot", "a" * 200, "$(whoami)", "../etc"]
    )
    def test_invalid_container_names_rejected(self, builder, name):
        with pytest.raises(CommandSecurityError):
            builder.start_container(name)

    def test_invalid_image_rejected(self, builder):
        with pytest.raises(CommandSecurityError):
            builder.run_container("dbaas-x", "Postgres 16", 10000, 5432)

    @pytest.mark.parametrize("port", [0, 70000, -1, True, "5432"])
    def test_invalid_ports_rejected(self, builder, port):
        with pytest.raises(CommandSecurityError):
            builder.run_container("dbaas-x", "postgres:16", port, 5432)

    def test_control_characters_rejected(self, builder):
        with pytest.raises(CommandSecurityError):
            builder.run_container(
                "dbaas-x", "postgres:16", 10000, 5432, environment={"POSTGRES_DB": "a\nb"}
            )

    def test_lowercase_env_names_rejected(self, builder):
        with pytest.raises(CommandSecurityError):
            builder.run_container("dbaas-x", "postgres:16", 10000, 5432, environment={"path": "x"})

    def test_stop_uses_grace_period(self, builder):
        assert builder.stop_container("dbaas-x", grace_seconds=5).argv == (
            "docker",
            "stop",
            "--time",
            "5",
            "dbaas-x",
        )

    def test_remove_also_drops_volumes(self, builder):
        assert builder.remove_container("dbaas-x").argv == ("docker", "rm", "-f", "-v", "dbaas-x")

    def test_stats_and_inspect_templates(self, builder):
        assert builder.stats("dbaas-x").render() == "docker stats --no-stream --format '{{json .}}' dbaas-x"
        assert builder.inspect_state("dbaas-x").render() == (
            "docker inspect --format '{{.State.Status}}' dbaas-x"
        )

    def test_logs_with_since(self, builder):
        since = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        command = builder.logs("dbaas-x", tail=50, since=since)

        assert command.argv == (
            "docker",
            "logs",
            "--timestamps",
            "--tail",
            "50",
            "--since",
            "2024-05-01T12:00:00+00:00",
            "dbaas-x",
        )

    def test_logs_with_relative_since(self, builder):
        assert "10m" in builder.logs("dbaas-x", since="10m").argv

    @pytest.mark.parametrize("since", ["yesterday", "10m; id", "10d"])
    def test_logs_rejects_bad_since(self, builder, since):
        with pytest.raises(CommandSecurityError):
            builder.logs("dbaas-x", since=since)

    @pytest.mark.parametrize("tail", [0, 10001, "all"])
    def test_logs_rejects_bad_tail(self, builder, tail):
        with pytest.raises(CommandSecurityError):
            builder.logs("dbaas-x", tail=tail)

    def test_exec_offsets_secret_indexes(self, builder):
        command = builder.exec_in_container(
            "dbaas-x", ["redis-cli", "-a", "pw", "ping"], secret_args={2}
        )

        assert command.argv == ("docker", "exec", "dbaas-x", "redis-cli", "-a", "pw", "ping")
        assert command.describe() == "docker exec dbaas-x redis-cli -a *** ping"

    def test_exec_requires_command(self, builder):
        with pytest.raises(CommandSecurityError):
            builder.exec_in_container("dbaas-x", [])

    def test_disallowed_subcommand(self, builder):
        with pytest.raises(CommandSecurityError):
            builder._docker("system", ["prune", "-af"])

    def test_command_length_limit(self):
        builder = DockerCommandBuilder(max_command_length=64)

        with pytest.raises(CommandSecurityError):
            builder.run_container(
                "dbaas-x", "postgres:16", 10000, 5432, environment={"POSTGRES_DB": "x" * 100}
            )
