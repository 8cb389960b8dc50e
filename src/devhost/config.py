"""Configuration management for DevHost."""

import logging
import os
import pwd
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/devhost/config.yaml")

# Pinned upstream release for the wordpress kind
DEFAULT_CMS_ARCHIVE_URL = "https://wordpress.org/wordpress-6.6.2.tar.gz"


def _invoking_user() -> str:
    """Return the human operator, looking through sudo."""
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user and sudo_user != "root":
        return sudo_user
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return os.environ.get("USER", "root")


@dataclass(frozen=True)
class DevHostConfig:
    """DevHost configuration settings.

    Instances are immutable: the CLI loads one per invocation and hands it to
    the lifecycle controller and every service it builds.
    """

    # Paths
    projects_root: Path = field(default_factory=lambda: Path("/var/www/projects"))
    data_dir: Path = field(default_factory=lambda: Path("/var/lib/devhost"))
    state_db: Path | None = None
    lock_dir: Path = field(default_factory=lambda: Path("/run/devhost/locks"))
    log_dir: Path = field(default_factory=lambda: Path("/var/log/devhost"))
    nginx_include_dir: Path = field(
        default_factory=lambda: Path("/etc/nginx/conf.d/devhost")
    )
    letsencrypt_live: Path = field(default_factory=lambda: Path("/etc/letsencrypt/live"))
    tunnel_config: Path = field(default_factory=lambda: Path("/etc/cloudflared/config.yml"))

    # Shared group permission model
    shared_group: str = "webdev"
    owner_user: str = field(default_factory=_invoking_user)
    service_principals: tuple[str, ...] = ("www-data", "vscode")

    # Web server
    nginx_bin: str = "nginx"
    web_server_unit: str = "nginx"
    php_fpm_socket: str = "/var/run/php/php8.4-fpm.sock"
    http_port: int = 80
    local_domain_suffix: str = "localhost"

    # MySQL
    mysql_host: str = "localhost"
    mysql_port: int = 3306
    mysql_admin_user: str = "root"
    mysql_admin_password: str = field(
        default_factory=lambda: os.environ.get("DEVHOST_MYSQL_PASSWORD", "")
    )

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_admin_user: str = "postgres"
    postgres_admin_password: str = field(
        default_factory=lambda: os.environ.get("DEVHOST_PG_PASSWORD", "")
    )
    db_connect_timeout: int = 10

    # Domain / TLS / tunnel
    base_domain: str | None = None
    admin_email: str | None = field(default_factory=lambda: os.environ.get("DEVHOST_ADMIN_EMAIL"))
    cloudflare_api_token: str | None = field(
        default_factory=lambda: os.environ.get("DEVHOST_CLOUDFLARE_TOKEN")
    )
    cloudflare_zone_id: str | None = None
    cloudflare_credentials_file: Path = field(
        default_factory=lambda: Path("/etc/devhost/cloudflare.ini")
    )
    tunnel_id: str | None = None
    tunnel_service_unit: str = "cloudflared"

    # Timeouts (seconds). Local steps fail fast; upstream steps get room.
    local_command_timeout: int = 60
    scaffold_timeout: int = 1800
    tls_timeout: int = 900

    # Scaffolding
    cms_archive_url: str = DEFAULT_CMS_ARCHIVE_URL

    def __post_init__(self) -> None:
        """Convert string paths to Path objects if needed."""
        path_fields = [
            "projects_root",
            "data_dir",
            "state_db",
            "lock_dir",
            "log_dir",
            "nginx_include_dir",
            "letsencrypt_live",
            "tunnel_config",
            "cloudflare_credentials_file",
        ]
        for field_name in path_fields:
            value = getattr(self, field_name, None)
            if isinstance(value, str):
                object.__setattr__(self, field_name, Path(value))

        if self.state_db is None:
            object.__setattr__(self, "state_db", self.data_dir / "devhost.db")

        if isinstance(self.service_principals, list):
            object.__setattr__(self, "service_principals", tuple(self.service_principals))

    @property
    def remote_access_enabled(self) -> bool:
        """Whether domain, TLS and tunnel routing can be configured."""
        return bool(
            self.base_domain
            and self.cloudflare_api_token
            and self.cloudflare_zone_id
            and self.tunnel_id
        )

    def project_root(self, name: str) -> Path:
        """Filesystem root of a project."""
        return self.projects_root / name

    def local_hostname(self, name: str) -> str:
        """Hostname used when no base domain is configured."""
        return f"{name}.{self.local_domain_suffix}"

    def project_domain(self, name: str) -> str | None:
        """Public hostname of a project, if a base domain is configured."""
        if not self.base_domain:
            return None
        return f"{name}.{self.base_domain}"

    @classmethod
    def load(cls, config_path: Path | None = None) -> "DevHostConfig":
        """Load configuration from YAML file, falling back to defaults."""
        if config_path is None:
            env_path = os.environ.get("DEVHOST_CONFIG")
            config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
                return cls._from_dict(data)
            except (yaml.YAMLError, OSError) as e:
                logger.warning(f"Ignoring unreadable config {config_path}: {e}")

        return cls()

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "DevHostConfig":
        """Create config from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}

        for key, value in data.items():
            if key in known:
                kwargs[key] = value
            else:
                logger.warning(f"Unknown config key '{key}' ignored")

        return cls(**kwargs)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in (self.data_dir, self.lock_dir, self.projects_root):
            dir_path.mkdir(parents=True, exist_ok=True)
