"""Database engine adapters and the engine catalog.

Each supported engine gets a ``BaseAdapter`` subclass that knows how to run the
engine in a container: image, internal port, how generated credentials are
injected at ``docker run`` time, what to run inside the container to check
readiness, and how clients connect afterwards. The lifecycle manager and the
driver only ever talk to adapters, never to engine specifics.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..core.exceptions import UnsupportedEngineError


@dataclass
class ContainerConfig:
    """Engine-specific part of a ``docker run``."""

    image: str
    container_port: int
    env_vars: dict[str, str] = field(default_factory=dict)
    secret_env: set[str] = field(default_factory=set)
    command: list[str] = field(default_factory=list)  # Server arguments after the image
    secret_command_args: set[int] = field(default_factory=set)


class BaseAdapter(ABC):
    """Abstract base class for database engine adapters.

    Attributes:
        engine_name: Canonical engine identifier (e.g. "postgresql")
        display_name: Human-readable name
        aliases: Other identifiers accepted for this engine
        default_port: Listening port inside the container
        container_image: Image reference used for ``docker run``
        supports_rotation: Whether ``rotate_password`` is available
    """

    engine_name: str = ""
    display_name: str = ""
    aliases: tuple[str, ...] = ()
    default_port: int = 0
    container_image: str = ""
    supports_rotation: bool = True

    def username_for(self, instance_id: str) -> str:
        """Database user created for an instance."""
        return f"user_{_short_id(instance_id)}"

    @abstractmethod
    def get_container_config(self, database_name: str, username: str, password: str) -> ContainerConfig:
        """Return what this engine needs in ``docker run``."""
        ...

    @abstractmethod
    def get_readiness_command(self, database_name: str, username: str, password: str) -> list[str]:
        """Command run inside the container that exits 0 once clients can connect."""
        ...

    def get_rotate_password_command(
        self, database_name: str, username: str, old_password: str, new_password: str
    ) -> list[str]:
        """Command run inside the container to change the user's password."""
        return []

    @abstractmethod
    def get_connection_string(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> str:
        ...

    def get_sample_connections(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> dict[str, str]:
        """Client commands shown once next to the credential."""
        return {
            "connection_string": self.get_connection_string(host, port, database, username, password)
        }


class PostgreSQLAdapter(BaseAdapter):
    """PostgreSQL 16."""

    engine_name = "postgresql"
    display_name = "PostgreSQL 16"
    aliases = ("postgres", "pg")
    default_port = 5432
    container_image = "postgres:16"

    def get_container_config(self, database_name: str, username: str, password: str) -> ContainerConfig:
        return ContainerConfig(
            image=self.container_image,
            container_port=self.default_port,
            env_vars={
                "POSTGRES_USER": username,
                "POSTGRES_PASSWORD": password,
                "POSTGRES_DB": database_name,
            },
            secret_env={"POSTGRES_PASSWORD"},
        )

    def get_readiness_command(self, database_name: str, username: str, password: str) -> list[str]:
        # Local socket connections use trust auth inside the official image
        return ["pg_isready", "-h", "localhost", "-U", username, "-d", database_name]

    def get_rotate_password_command(
        self, database_name: str, username: str, old_password: str, new_password: str
    ) -> list[str]:
        return [
            "psql",
            "-U",
            username,
            "-d",
            database_name,
            "-v",
            "ON_ERROR_STOP=1",
            "-c",
            f"ALTER USER \"{username}\" WITH PASSWORD '{new_password}'",
        ]

    def get_connection_string(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> str:
        return f"postgresql://{username}:{password}@{host}:{port}/{database}"

    def get_sample_connections(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> dict[str, str]:
        return {
            "psql": f"psql -h {host} -U {username} -d {database} -p {port}",
            "connection_string": self.get_connection_string(host, port, database, username, password),
        }


class MySQLAdapter(BaseAdapter):
    """MySQL 8.0."""

    engine_name = "mysql"
    display_name = "MySQL 8.0"
    default_port = 3306
    container_image = "mysql:8.0"

    def get_container_config(self, database_name: str, username: str, password: str) -> ContainerConfig:
        return ContainerConfig(
            image=self.container_image,
            container_port=self.default_port,
            env_vars={
                "MYSQL_RANDOM_ROOT_PASSWORD": "yes",
                "MYSQL_USER": username,
                "MYSQL_PASSWORD": password,
                "MYSQL_DATABASE": database_name,
            },
            secret_env={"MYSQL_PASSWORD"},
        )

    def get_readiness_command(self, database_name: str, username: str, password: str) -> list[str]:
        # TCP so the temporary init server on the socket does not count as ready
        return [
            "mysql",
            "-h",
            "127.0.0.1",
            "-u",
            username,
            f"-p{password}",
            "-D",
            database_name,
            "-e",
            "SELECT 1",
        ]

    def get_rotate_password_command(
        self, database_name: str, username: str, old_password: str, new_password: str
    ) -> list[str]:
        return [
            "mysql",
            "-h",
            "127.0.0.1",
            "-u",
            username,
            f"-p{old_password}",
            "-e",
            f"ALTER USER USER() IDENTIFIED BY '{new_password}'",
        ]

    def get_connection_string(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> str:
        return f"mysql://{username}:{password}@{host}:{port}/{database}"

    def get_sample_connections(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> dict[str, str]:
        return {
            "mysql": f"mysql -h {host} -u {username} -p -P {port} {database}",
            "connection_string": self.get_connection_string(host, port, database, username, password),
        }


class MongoDBAdapter(BaseAdapter):
    """MongoDB 6.0."""

    engine_name = "mongodb"
    display_name = "MongoDB 6.0"
    aliases = ("mongo",)
    default_port = 27017
    container_image = "mongo:6.0"

    def get_container_config(self, database_name: str, username: str, password: str) -> ContainerConfig:
        return ContainerConfig(
            image=self.container_image,
            container_port=self.default_port,
            env_vars={
                "MONGO_INITDB_ROOT_USERNAME": username,
                "MONGO_INITDB_ROOT_PASSWORD": password,
                "MONGO_INITDB_DATABASE": database_name,
            },
            secret_env={"MONGO_INITDB_ROOT_PASSWORD"},
        )

    def get_readiness_command(self, database_name: str, username: str, password: str) -> list[str]:
        return [
            "mongosh",
            "--quiet",
            "-u",
            username,
            "-p",
            password,
            "--authenticationDatabase",
            "admin",
            "--eval",
            "db.adminCommand('ping')",
        ]

    def get_rotate_password_command(
        self, database_name: str, username: str, old_password: str, new_password: str
    ) -> list[str]:
        return [
            "mongosh",
            "admin",
            "--quiet",
            "-u",
            username,
            "-p",
            old_password,
            "--eval",
            f"db.changeUserPassword('{username}', '{new_password}')",
        ]

    def get_connection_string(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> str:
        return f"mongodb://{username}:{password}@{host}:{port}/{database}?authSource=admin"

    def get_sample_connections(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> dict[str, str]:
        return {
            "mongosh": (
                f"mongosh --host {host} --port {port} -u {username} -p "
                f"--authenticationDatabase admin {database}"
            ),
            "connection_string": self.get_connection_string(host, port, database, username, password),
        }


class RedisAdapter(BaseAdapter):
    """Redis 7.0.

    The password is a server argument, so ``docker start`` after a rotation
    would bring back the old one; rotation is therefore not offered.
    """

    engine_name = "redis"
    display_name = "Redis 7.0"
    default_port = 6379
    container_image = "redis:7.0"
    supports_rotation = False

    def username_for(self, instance_id: str) -> str:
        return "default"

    def get_container_config(self, database_name: str, username: str, password: str) -> ContainerConfig:
        return ContainerConfig(
            image=self.container_image,
            container_port=self.default_port,
            command=["redis-server", "--requirepass", password, "--appendonly", "yes"],
            secret_command_args={2},
        )

    def get_readiness_command(self, database_name: str, username: str, password: str) -> list[str]:
        return ["redis-cli", "-a", password, "--no-auth-warning", "ping"]

    def get_connection_string(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> str:
        return f"redis://:{password}@{host}:{port}/0"

    def get_sample_connections(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> dict[str, str]:
        return {
            "redis-cli": f"redis-cli -h {host} -p {port} --askpass",
            "connection_string": self.get_connection_string(host, port, database, username, password),
        }


class MSSQLAdapter(BaseAdapter):
    """Microsoft SQL Server 2022."""

    engine_name = "mssql"
    display_name = "SQL Server 2022"
    aliases = ("sqlserver", "sql server", "sql_server")
    default_port = 1433
    container_image = "mcr.microsoft.com/mssql/server:2022-latest"

    SQLCMD = "/opt/mssql-tools18/bin/sqlcmd"

    def username_for(self, instance_id: str) -> str:
        return "sa"

    def get_container_config(self, database_name: str, username: str, password: str) -> ContainerConfig:
        return ContainerConfig(
            image=self.container_image,
            container_port=self.default_port,
            env_vars={"ACCEPT_EULA": "Y", "MSSQL_SA_PASSWORD": password, "MSSQL_PID": "Developer"},
            secret_env={"MSSQL_SA_PASSWORD"},
        )

    def get_readiness_command(self, database_name: str, username: str, password: str) -> list[str]:
        return [self.SQLCMD, "-C", "-S", "localhost", "-U", username, "-P", password, "-Q", "SELECT 1"]

    def get_rotate_password_command(
        self, database_name: str, username: str, old_password: str, new_password: str
    ) -> list[str]:
        return [
            self.SQLCMD,
            "-C",
            "-S",
            "localhost",
            "-U",
            username,
            "-P",
            old_password,
            "-b",
            "-Q",
            f"ALTER LOGIN [{username}] WITH PASSWORD = '{new_password}' OLD_PASSWORD = '{old_password}'",
        ]

    def get_connection_string(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> str:
        return f"mssql://{username}:{password}@{host}:{port}/{database}"

    def get_sample_connections(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> dict[str, str]:
        return {
            "sqlcmd": f"sqlcmd -S {host},{port} -U {username} -d {database}",
            "connection_string": self.get_connection_string(host, port, database, username, password),
        }


class CassandraAdapter(BaseAdapter):
    """Apache Cassandra 4.1.

    The stock image runs with ``AllowAllAuthenticator``; the generated
    credential is disclosed for client configuration but not enforced.
    """

    engine_name = "cassandra"
    display_name = "Cassandra 4.1"
    default_port = 9042
    container_image = "cassandra:4.1"
    supports_rotation = False

    def username_for(self, instance_id: str) -> str:
        return "cassandra"

    def get_container_config(self, database_name: str, username: str, password: str) -> ContainerConfig:
        return ContainerConfig(
            image=self.container_image,
            container_port=self.default_port,
            env_vars={"CASSANDRA_CLUSTER_NAME": database_name, "MAX_HEAP_SIZE": "512M", "HEAP_NEWSIZE": "128M"},
        )

    def get_readiness_command(self, database_name: str, username: str, password: str) -> list[str]:
        return ["cqlsh", "-e", "SELECT now() FROM system.local"]

    def get_connection_string(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> str:
        return f"cassandra://{host}:{port}/{database}"

    def get_sample_connections(
        self, host: str, port: int, database: str, username: str, password: str
    ) -> dict[str, str]:
        return {
            "cqlsh": f"cqlsh -u {username} {host} {port}",
            "connection_string": self.get_connection_string(host, port, database, username, password),
        }


# =============================================================================
# Engine catalog
# =============================================================================

_ADAPTERS: dict[str, BaseAdapter] = {
    adapter.engine_name: adapter
    for adapter in (
        PostgreSQLAdapter(),
        MySQLAdapter(),
        MongoDBAdapter(),
        RedisAdapter(),
        MSSQLAdapter(),
        CassandraAdapter(),
    )
}

_ALIASES: dict[str, str] = {
    alias: adapter.engine_name for adapter in _ADAPTERS.values() for alias in adapter.aliases
}


def normalize_engine(engine: str) -> str:
    """Canonical engine name for an identifier or alias.

    Raises:
        UnsupportedEngineError: If the engine is not in the catalog
    """
    key = (engine or "").strip().lower()
    key = _ALIASES.get(key, key)
    if key not in _ADAPTERS:
        supported = ", ".join(sorted(_ADAPTERS))
        raise UnsupportedEngineError(f"Unknown database engine '{engine}'. Supported: {supported}")
    return key


def get_adapter(engine: str) -> BaseAdapter:
    """Get the adapter instance for a database engine."""
    return _ADAPTERS[normalize_engine(engine)]


def list_adapters() -> list[BaseAdapter]:
    return list(_ADAPTERS.values())


_DB_NAME_INVALID = re.compile(r"[^a-z0-9_]")


def database_name_for(instance_id: str, custom_name: str | None = None) -> str:
    """Derive a database name valid for every engine in the catalog."""
    if custom_name:
        name = _DB_NAME_INVALID.sub("_", custom_name.strip().lower()).strip("_")
        if name:
            if name[0].isdigit():
                name = f"db_{name}"
            return name[:63]
    return f"db_{_short_id(instance_id)}"


def _short_id(instance_id: str) -> str:
    return re.sub(r"[^a-z0-9]", "", instance_id.lower())[:12] or "instance"
