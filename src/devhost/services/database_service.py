"""Per-project database provisioning for MySQL and PostgreSQL.

Schema and user names derive only from the project name and engine
(``DatabaseBinding.derive``), so a project can be deprovisioned without any
stored state. Grants are scoped to the project schema, never server-wide.
"""

import logging
import re
import secrets
import string
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import psycopg2
import pymysql
from psycopg2 import errorcodes, sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from devhost.config import DevHostConfig
from devhost.errors import DatabaseOperationFailed, EngineUnreachable, GrantDenied
from devhost.models import DatabaseBinding, DatabaseEngine

logger = logging.getLogger(__name__)

PASSWORD_LENGTH = 32
PASSWORD_ALPHABET = string.ascii_letters + string.digits

IDENTIFIER_PATTERN = re.compile(r"^[a-z0-9_]{1,63}$")

# MySQL server error numbers
MYSQL_CANT_CONNECT = (2002, 2003, 2005, 2006, 2013)
MYSQL_ACCESS_DENIED = (1044, 1045, 1142, 1227, 1410)

engine_retry = retry(
    retry=retry_if_exception_type(EngineUnreachable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    before_sleep=before_sleep_log(logger, logging.DEBUG),
    reraise=True,
)


def generate_secure_password(length: int = PASSWORD_LENGTH) -> str:
    """Generate a cryptographically secure password.

    32 characters over 62 symbols carry about 190 bits of entropy.
    """
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def validate_identifier(name: str) -> None:
    """Reject identifiers that could not have come from derive()."""
    if not IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid database identifier: {name!r}")


class EngineAdmin(ABC):
    """Administrative interface of one relational engine."""

    engine: DatabaseEngine

    @abstractmethod
    def ping(self) -> None:
        """Open and close an admin connection."""

    @abstractmethod
    def create_schema(self, binding: DatabaseBinding) -> bool:
        """Create the schema if absent. Returns True if created."""

    @abstractmethod
    def create_principal(self, binding: DatabaseBinding) -> bool:
        """Create the localhost-only principal if absent. Returns True if created."""

    @abstractmethod
    def grant(self, binding: DatabaseBinding) -> None:
        """Grant the principal every privilege on exactly its schema."""

    @abstractmethod
    def drop_schema(self, binding: DatabaseBinding) -> bool:
        """Drop the schema if present. Returns True if dropped."""

    @abstractmethod
    def drop_principal(self, binding: DatabaseBinding) -> bool:
        """Drop the principal if present. Returns True if dropped."""

    @abstractmethod
    def schema_exists(self, binding: DatabaseBinding) -> bool:
        """Check if the schema exists."""

    @abstractmethod
    def principal_exists(self, binding: DatabaseBinding) -> bool:
        """Check if the principal exists."""


class PostgresAdmin(EngineAdmin):
    """PostgreSQL administration through psycopg2."""

    engine = DatabaseEngine.POSTGRESQL

    def __init__(self, config: DevHostConfig) -> None:
        self.config = config

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        try:
            conn = psycopg2.connect(
                host=self.config.postgres_host,
                port=self.config.postgres_port,
                user=self.config.postgres_admin_user,
                password=self.config.postgres_admin_password,
                database="postgres",
                connect_timeout=self.config.db_connect_timeout,
            )
        except psycopg2.OperationalError as e:
            message = str(e)
            if "authentication failed" in message or "permission denied" in message:
                raise GrantDenied("postgresql", f"PostgreSQL rejected the admin login: {message}")
            raise EngineUnreachable("postgresql", f"Failed to connect to PostgreSQL: {message}")

        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        try:
            with conn.cursor() as cur:
                yield cur
        except psycopg2.Error as e:
            if e.pgcode == errorcodes.INSUFFICIENT_PRIVILEGE:
                raise GrantDenied("postgresql", f"PostgreSQL denied the operation: {e}")
            raise DatabaseOperationFailed("postgresql", f"PostgreSQL operation failed: {e}") from e
        finally:
            conn.close()

    def ping(self) -> None:
        with self._cursor() as cur:
            cur.execute("SELECT 1")

    def schema_exists(self, binding: DatabaseBinding) -> bool:
        with self._cursor() as cur:
            cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", [binding.schema_name])
            return cur.fetchone() is not None

    def principal_exists(self, binding: DatabaseBinding) -> bool:
        with self._cursor() as cur:
            cur.execute("SELECT 1 FROM pg_roles WHERE rolname = %s", [binding.username])
            return cur.fetchone() is not None

    def create_schema(self, binding: DatabaseBinding) -> bool:
        # CREATE DATABASE has no IF NOT EXISTS form
        if self.schema_exists(binding):
            return False
        with self._cursor() as cur:
            cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(binding.schema_name)))
        return True

    def create_principal(self, binding: DatabaseBinding) -> bool:
        existed = self.principal_exists(binding)
        with self._cursor() as cur:
            if existed:
                # Reset to the password generated for this project
                cur.execute(
                    sql.SQL("ALTER ROLE {} WITH LOGIN PASSWORD %s").format(
                        sql.Identifier(binding.username)
                    ),
                    [binding.password],
                )
            else:
                cur.execute(
                    sql.SQL("CREATE ROLE {} WITH LOGIN PASSWORD %s").format(
                        sql.Identifier(binding.username)
                    ),
                    [binding.password],
                )
        return not existed

    def grant(self, binding: DatabaseBinding) -> None:
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(
                    sql.Identifier(binding.schema_name), sql.Identifier(binding.username)
                )
            )
            # Ownership lets the role use the public schema on PostgreSQL 15+
            cur.execute(
                sql.SQL("ALTER DATABASE {} OWNER TO {}").format(
                    sql.Identifier(binding.schema_name), sql.Identifier(binding.username)
                )
            )

    def drop_schema(self, binding: DatabaseBinding) -> bool:
        existed = self.schema_exists(binding)
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT pg_terminate_backend(pg_stat_activity.pid)
                FROM pg_stat_activity
                WHERE pg_stat_activity.datname = %s
                AND pid <> pg_backend_pid()
                """,
                [binding.schema_name],
            )
            cur.execute(
                sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(binding.schema_name))
            )
        return existed

    def drop_principal(self, binding: DatabaseBinding) -> bool:
        existed = self.principal_exists(binding)
        with self._cursor() as cur:
            cur.execute(sql.SQL("DROP ROLE IF EXISTS {}").format(sql.Identifier(binding.username)))
        return existed


class MySQLAdmin(EngineAdmin):
    """MySQL / MariaDB administration through PyMySQL."""

    engine = DatabaseEngine.MYSQL

    def __init__(self, config: DevHostConfig) -> None:
        self.config = config

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        try:
            conn = pymysql.connect(
                host=self.config.mysql_host,
                port=self.config.mysql_port,
                user=self.config.mysql_admin_user,
                password=self.config.mysql_admin_password,
                connect_timeout=self.config.db_connect_timeout,
                autocommit=True,
            )
        except pymysql.err.OperationalError as e:
            code = e.args[0] if e.args else None
            if code in MYSQL_ACCESS_DENIED:
                raise GrantDenied("mysql", f"MySQL rejected the admin login: {e}")
            raise EngineUnreachable("mysql", f"Failed to connect to MySQL: {e}")

        try:
            with conn.cursor() as cur:
                yield cur
        except pymysql.err.MySQLError as e:
            code = e.args[0] if e.args else None
            if code in MYSQL_ACCESS_DENIED:
                raise GrantDenied("mysql", f"MySQL denied the operation: {e}")
            if code in MYSQL_CANT_CONNECT:
                raise EngineUnreachable("mysql", f"Lost connection to MySQL: {e}")
            raise DatabaseOperationFailed("mysql", f"MySQL operation failed: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _quote(identifier: str) -> str:
        validate_identifier(identifier)
        return f"`{identifier}`"

    def ping(self) -> None:
        with self._cursor() as cur:
            cur.execute("SELECT 1")

    def schema_exists(self, binding: DatabaseBinding) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "SELECT 1 FROM information_schema.schemata WHERE schema_name = %s",
                [binding.schema_name],
            )
            return cur.fetchone() is not None

    def principal_exists(self, binding: DatabaseBinding) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "SELECT 1 FROM mysql.user WHERE user = %s AND host = 'localhost'",
                [binding.username],
            )
            return cur.fetchone() is not None

    def create_schema(self, binding: DatabaseBinding) -> bool:
        existed = self.schema_exists(binding)
        with self._cursor() as cur:
            cur.execute(f"CREATE DATABASE IF NOT EXISTS {self._quote(binding.schema_name)}")
        return not existed

    def create_principal(self, binding: DatabaseBinding) -> bool:
        validate_identifier(binding.username)
        existed = self.principal_exists(binding)
        with self._cursor() as cur:
            cur.execute(
                "CREATE USER IF NOT EXISTS %s@'localhost' IDENTIFIED BY %s",
                [binding.username, binding.password],
            )
            if existed:
                cur.execute(
                    "ALTER USER %s@'localhost' IDENTIFIED BY %s",
                    [binding.username, binding.password],
                )
        return not existed

    def grant(self, binding: DatabaseBinding) -> None:
        with self._cursor() as cur:
            cur.execute(
                f"GRANT ALL PRIVILEGES ON {self._quote(binding.schema_name)}.* TO %s@'localhost'",
                [binding.username],
            )
            cur.execute("FLUSH PRIVILEGES")

    def drop_schema(self, binding: DatabaseBinding) -> bool:
        existed = self.schema_exists(binding)
        with self._cursor() as cur:
            cur.execute(f"DROP DATABASE IF EXISTS {self._quote(binding.schema_name)}")
        return existed

    def drop_principal(self, binding: DatabaseBinding) -> bool:
        validate_identifier(binding.username)
        existed = self.principal_exists(binding)
        with self._cursor() as cur:
            cur.execute("DROP USER IF EXISTS %s@'localhost'", [binding.username])
        return existed


AdminFactory = Callable[[DatabaseEngine], EngineAdmin]


def default_admin_factory(config: DevHostConfig) -> AdminFactory:
    """Build engine admins from configuration."""

    def factory(engine: DatabaseEngine) -> EngineAdmin:
        if engine is DatabaseEngine.MYSQL:
            return MySQLAdmin(config)
        return PostgresAdmin(config)

    return factory


class DatabaseService:
    """Provisions and deprovisions project databases across engines."""

    def __init__(
        self,
        config: DevHostConfig,
        admin_factory: AdminFactory | None = None,
    ) -> None:
        self.config = config
        self._admin_factory = admin_factory or default_admin_factory(config)
        self._admins: dict[DatabaseEngine, EngineAdmin] = {}

    def admin(self, engine: DatabaseEngine) -> EngineAdmin:
        if engine not in self._admins:
            self._admins[engine] = self._admin_factory(engine)
        return self._admins[engine]

    def new_binding(self, project_name: str, engine: DatabaseEngine) -> DatabaseBinding:
        """Derive a binding with a freshly generated password.

        Called once per create; the password is then only ever read back from
        the project configuration file.
        """
        binding = DatabaseBinding.derive(
            project_name, engine, password=generate_secure_password()
        )
        validate_identifier(binding.schema_name)
        validate_identifier(binding.username)
        return binding

    @engine_retry
    def provision(self, binding: DatabaseBinding) -> dict[str, bool]:
        """Create schema, then principal, then the schema-scoped grant.

        Each step is idempotent, so a retry after a dropped connection resumes
        safely.
        """
        admin = self.admin(binding.engine)
        schema_created = admin.create_schema(binding)
        principal_created = admin.create_principal(binding)
        admin.grant(binding)
        logger.info(
            f"Provisioned {binding.engine.value} schema {binding.schema_name} "
            f"for user {binding.username}"
        )
        return {"schema_created": schema_created, "principal_created": principal_created}

    @engine_retry
    def deprovision(self, binding: DatabaseBinding) -> dict[str, bool]:
        """Drop schema, then principal. Already-absent objects count as success."""
        admin = self.admin(binding.engine)
        schema_dropped = admin.drop_schema(binding)
        principal_dropped = admin.drop_principal(binding)
        logger.info(f"Deprovisioned {binding.engine.value} schema {binding.schema_name}")
        return {"schema_dropped": schema_dropped, "principal_dropped": principal_dropped}

    def exists(self, binding: DatabaseBinding) -> dict[str, bool]:
        """Report whether schema and principal exist."""
        admin = self.admin(binding.engine)
        return {
            "schema": admin.schema_exists(binding),
            "principal": admin.principal_exists(binding),
        }
