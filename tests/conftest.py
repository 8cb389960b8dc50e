"""Shared fixtures for DevHost tests."""

import dataclasses
import grp
import os
import pwd
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from devhost.config import DevHostConfig
from devhost.database import Database, open_database
from devhost.errors import EngineUnreachable
from devhost.models import DatabaseBinding, DatabaseEngine
from devhost.runner import Command, CommandResult, CommandRunner
from devhost.services.database_service import DatabaseService, EngineAdmin


class FakeRunner(CommandRunner):
    """Records commands and answers them from scripted rules.

    Rules match on an argv prefix; the newest matching rule wins. Commands
    with no matching rule succeed with empty output.
    """

    def __init__(self) -> None:
        self.commands: list[Command] = []
        self._rules: list[dict] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        action: Callable[[Command], None] | None = None,
        once: bool = False,
    ) -> None:
        self._rules.insert(
            0,
            {
                "prefix": tuple(prefix),
                "returncode": returncode,
                "stdout": stdout,
                "stderr": stderr,
                "timed_out": timed_out,
                "action": action,
                "once": once,
            },
        )

    def run(self, command: Command) -> CommandResult:
        self.commands.append(command)
        for rule in self._rules:
            prefix = rule["prefix"]
            if command.argv[: len(prefix)] != prefix:
                continue
            if rule["once"]:
                self._rules.remove(rule)
            if rule["action"]:
                rule["action"](command)
            return CommandResult(
                command=command,
                returncode=rule["returncode"],
                stdout=rule["stdout"],
                stderr=rule["stderr"],
                timed_out=rule["timed_out"],
            )
        return CommandResult(command=command, returncode=0)

    def argvs(self, program: str | None = None) -> list[tuple[str, ...]]:
        return [c.argv for c in self.commands if program is None or c.program == program]


class FakeAdmin(EngineAdmin):
    """In-memory engine: a set of schemas, principals and grants."""

    def __init__(self, engine: DatabaseEngine) -> None:
        self.engine = engine
        self.schemas: set[str] = set()
        self.principals: dict[str, str] = {}
        self.grants: set[tuple[str, str]] = set()
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.unreachable_for = 0

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.unreachable_for:
            self.unreachable_for -= 1
            raise EngineUnreachable(self.engine.value, "connection refused")
        if name in self.failures:
            raise self.failures[name]

    def ping(self) -> None:
        self._call("ping")

    def create_schema(self, binding: DatabaseBinding) -> bool:
        self._call("create_schema")
        created = binding.schema_name not in self.schemas
        self.schemas.add(binding.schema_name)
        return created

    def create_principal(self, binding: DatabaseBinding) -> bool:
        self._call("create_principal")
        created = binding.username not in self.principals
        self.principals[binding.username] = binding.password
        return created

    def grant(self, binding: DatabaseBinding) -> None:
        self._call("grant")
        self.grants.add((binding.username, binding.schema_name))

    def drop_schema(self, binding: DatabaseBinding) -> bool:
        self._call("drop_schema")
        if binding.schema_name not in self.schemas:
            return False
        self.schemas.discard(binding.schema_name)
        self.grants = {g for g in self.grants if g[1] != binding.schema_name}
        return True

    def drop_principal(self, binding: DatabaseBinding) -> bool:
        self._call("drop_principal")
        return self.principals.pop(binding.username, None) is not None

    def schema_exists(self, binding: DatabaseBinding) -> bool:
        return binding.schema_name in self.schemas

    def principal_exists(self, binding: DatabaseBinding) -> bool:
        return binding.username in self.principals


@pytest.fixture(autouse=True)
def no_retry_sleep():
    """Let tenacity back off without actually waiting."""
    with patch("tenacity.nap.time.sleep"):
        yield


@pytest.fixture
def current_user() -> str:
    return pwd.getpwuid(os.getuid()).pw_name


@pytest.fixture
def current_group() -> str:
    return grp.getgrgid(os.getgid()).gr_name


@pytest.fixture
def config(tmp_path: Path, current_user: str, current_group: str) -> DevHostConfig:
    """Configuration rooted in a temporary directory, owned by the test user."""
    return DevHostConfig(
        projects_root=tmp_path / "projects",
        data_dir=tmp_path / "data",
        lock_dir=tmp_path / "locks",
        log_dir=tmp_path / "log",
        nginx_include_dir=tmp_path / "nginx" / "devhost",
        letsencrypt_live=tmp_path / "letsencrypt" / "live",
        tunnel_config=tmp_path / "cloudflared" / "config.yml",
        cloudflare_credentials_file=tmp_path / "cloudflare.ini",
        shared_group=current_group,
        owner_user=current_user,
        service_principals=(),
        admin_email=None,
        cloudflare_api_token=None,
        mysql_admin_password="",
        postgres_admin_password="",
        cms_archive_url="https://downloads.example.test/wordpress.tar.gz",
    )


@pytest.fixture
def remote_config(config: DevHostConfig) -> DevHostConfig:
    """Configuration with a base domain and tunnel credentials."""
    return dataclasses.replace(
        config,
        base_domain="dev.example.com",
        cloudflare_api_token="cf-token",
        cloudflare_zone_id="zone-1",
        tunnel_id="tunnel-uuid",
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def admins() -> dict[DatabaseEngine, FakeAdmin]:
    return {engine: FakeAdmin(engine) for engine in DatabaseEngine}


@pytest.fixture
def database_service(config, admins) -> DatabaseService:
    return DatabaseService(config, admin_factory=lambda engine: admins[engine])


@pytest.fixture
def registry(config) -> Database:
    return open_database(config.state_db)
