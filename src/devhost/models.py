"""Domain types for DevHost projects."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class ProjectKind(Enum):
    """Closed set of project kinds, one scaffolder each."""

    PLAIN = "plain"
    LARAVEL = "laravel"
    SYMFONY = "symfony"
    WORDPRESS = "wordpress"
    CUSTOM = "custom"

    @classmethod
    def choices(cls) -> list[str]:
        return [kind.value for kind in cls]


class ProjectState(Enum):
    """Lifecycle states of a project.

    NotExists -> Validating -> Provisioning -> Active
    Active -> Deleting -> Deleted
    Provisioning -> RollingBack -> NotExists
    """

    NOT_EXISTS = "not_exists"
    VALIDATING = "validating"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    ROLLING_BACK = "rolling_back"
    DELETING = "deleting"
    DELETED = "deleted"


# States in which a project name is taken
OCCUPYING_STATES = (
    ProjectState.PROVISIONING,
    ProjectState.ACTIVE,
    ProjectState.ROLLING_BACK,
    ProjectState.DELETING,
)


class DatabaseEngine(Enum):
    """Supported relational engines."""

    MYSQL = "mysql"
    POSTGRESQL = "postgresql"

    @property
    def config_key(self) -> str:
        """Suffix used in the project configuration file."""
        return self.value.upper()

    @classmethod
    def choices(cls) -> list[str]:
        return [engine.value for engine in cls]


class TlsState(Enum):
    """Certificate state of a routing binding."""

    NONE = "none"
    PENDING = "pending"
    ISSUED = "issued"
    EXPIRED = "expired"


# Allowed tlsState moves. expired is reached from issued only through an
# external renewal signal; a renewed certificate moves expired -> issued.
TLS_TRANSITIONS: dict[TlsState, tuple[TlsState, ...]] = {
    TlsState.NONE: (TlsState.PENDING,),
    TlsState.PENDING: (TlsState.ISSUED, TlsState.NONE),
    TlsState.ISSUED: (TlsState.EXPIRED, TlsState.NONE),
    TlsState.EXPIRED: (TlsState.ISSUED, TlsState.PENDING, TlsState.NONE),
}


def transition_tls(current: TlsState, target: TlsState) -> TlsState:
    """Validate a tlsState move and return the new state."""
    if current == target:
        return target
    if target not in TLS_TRANSITIONS[current]:
        raise ValueError(f"Illegal TLS state transition {current.value} -> {target.value}")
    return target


def sanitize(name: str) -> str:
    """Turn a project name into a database identifier fragment."""
    return re.sub(r"[^a-z0-9_]", "_", name.lower().replace("-", "_"))


@dataclass
class DatabaseBinding:
    """Credentials and schema of one project database."""

    engine: DatabaseEngine
    schema_name: str
    username: str
    password: str = field(default="", repr=False)
    grant_scope: str = "schema"

    @classmethod
    def derive(cls, project_name: str, engine: DatabaseEngine, password: str = "") -> "DatabaseBinding":
        """Build the binding whose names follow only from project name and engine."""
        base = sanitize(project_name)
        return cls(
            engine=engine,
            schema_name=f"{base}_dev",
            username=base,
            password=password,
        )

    def to_dict(self, show_password: bool = False) -> dict[str, Any]:
        return {
            "engine": self.engine.value,
            "schema": self.schema_name,
            "username": self.username,
            "password": self.password if show_password else mask_secret(self.password),
            "grant_scope": self.grant_scope,
        }


@dataclass
class RoutingBinding:
    """Web server and public routing state of a project."""

    virtual_host_path: Path | None = None
    server_name: str | None = None
    domain: str | None = None
    tls_state: TlsState = TlsState.NONE
    tunnel_rule_id: str | None = None
    certificate_path: str | None = None
    key_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "virtual_host": str(self.virtual_host_path) if self.virtual_host_path else None,
            "server_name": self.server_name,
            "domain": self.domain,
            "tls_state": self.tls_state.value,
            "tunnel_rule": self.tunnel_rule_id,
        }


@dataclass
class Project:
    """A provisioned development environment."""

    name: str
    kind: ProjectKind
    filesystem_root: Path
    state: ProjectState = ProjectState.NOT_EXISTS
    databases: list[DatabaseBinding] = field(default_factory=list)
    routing: RoutingBinding = field(default_factory=RoutingBinding)
    source: str | None = None
    created_at: datetime | None = None
    last_modified_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "state": self.state.value,
            "path": str(self.filesystem_root),
            "source": self.source,
            "databases": [db.to_dict() for db in self.databases],
            "routing": self.routing.to_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.last_modified_at.isoformat() if self.last_modified_at else None,
        }


@dataclass(frozen=True)
class GroupPermissionPolicy:
    """Host-wide shared group permission policy."""

    group_name: str
    owner_principal: str
    member_principals: tuple[str, ...]


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Render a secret with at most its first few characters visible."""
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "*" * 8
    return value[:visible] + "*" * 8
