"""Nginx virtual host management for DevHost projects."""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from jinja2 import Template

from devhost.config import DevHostConfig
from devhost.errors import WebServerError
from devhost.runner import Command, CommandRunner
from devhost.services.project_config import write_atomic

logger = logging.getLogger(__name__)

FRAGMENT_MODE = 0o644

# Shared by both site templates
PHP_LOCATIONS = """
    location / {
        try_files $uri $uri/ /index.php?$query_string;
    }

    location ~ \\.php$ {
        include snippets/fastcgi-php.conf;
        fastcgi_pass unix:{{ php_fpm_socket }};
{%- if https %}
        fastcgi_param HTTPS on;
{%- endif %}
    }

    location ~ /\\.(?!well-known) {
        deny all;
    }
"""

# Nginx site template (HTTP only - TLS added after certificate issuance)
NGINX_SITE_TEMPLATE = """# Managed by DevHost - Do not edit manually
# Project: {{ project_name }}
# Generated: {{ timestamp }}

server {
    listen {{ http_port }};
    server_name {{ server_names | join(' ') }};
    root {{ document_root }};
    index index.php index.html index.htm;

    access_log /var/log/nginx/{{ project_name }}.access.log;
    error_log /var/log/nginx/{{ project_name }}.error.log;
""" + PHP_LOCATIONS + """}
"""

# Nginx site template with TLS for the public domain
NGINX_TLS_SITE_TEMPLATE = """# Managed by DevHost - Do not edit manually
# Project: {{ project_name }}
# Generated: {{ timestamp }}
# TLS: enabled

server {
    listen {{ http_port }};
    server_name {{ domain }};
    return 301 https://$host$request_uri;
}

server {
    listen 443 ssl;
    http2 on;
    server_name {{ domain }};
    root {{ document_root }};
    index index.php index.html index.htm;

    ssl_certificate {{ certificate_path }};
    ssl_certificate_key {{ key_path }};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers off;

    access_log /var/log/nginx/{{ project_name }}.access.log;
    error_log /var/log/nginx/{{ project_name }}.error.log;
""" + PHP_LOCATIONS + """}
{% if local_names %}
server {
    listen {{ http_port }};
    server_name {{ local_names | join(' ') }};
    root {{ document_root }};
    index index.php index.html index.htm;
{% with https = false %}""" + PHP_LOCATIONS + """{% endwith %}}
{% endif %}"""


@dataclass
class TlsMaterial:
    """Certificate files installed into a virtual host."""

    domain: str
    certificate_path: str
    key_path: str


class NginxService:
    """Renders, installs and removes per-project virtual host fragments.

    Fragments live in ``nginx_include_dir`` as ``<project>.conf`` and are
    written with write-then-rename, so concurrent edits of different projects
    never see each other's partial files.
    """

    def __init__(self, config: DevHostConfig, runner: CommandRunner | None = None) -> None:
        self.config = config
        self.runner = runner or CommandRunner()

    def fragment_path(self, project: str) -> Path:
        return self.config.nginx_include_dir / f"{project}.conf"

    def has_virtual_host(self, project: str) -> bool:
        return self.fragment_path(project).exists()

    @property
    def include_file(self) -> Path:
        """Top-level include that pulls the fragment directory into nginx."""
        return self.config.nginx_include_dir.with_suffix(".conf")

    def ensure_include(self) -> bool:
        """Create the fragment directory and its include. Returns True if created."""
        self.config.nginx_include_dir.mkdir(parents=True, exist_ok=True)
        content = f"# Managed by DevHost\ninclude {self.config.nginx_include_dir}/*.conf;\n"
        if self.include_file.exists() and self.include_file.read_text() == content:
            return False
        write_atomic(self.include_file, content, FRAGMENT_MODE)
        return True

    def render(
        self,
        project: str,
        server_names: list[str],
        document_root: Path,
        tls: TlsMaterial | None = None,
    ) -> str:
        """Render a project's fragment."""
        context = {
            "project_name": project,
            "timestamp": self._timestamp(),
            "http_port": self.config.http_port,
            "document_root": document_root,
            "php_fpm_socket": self.config.php_fpm_socket,
            "https": tls is not None,
        }
        if tls is None:
            return Template(NGINX_SITE_TEMPLATE).render(server_names=server_names, **context)

        return Template(NGINX_TLS_SITE_TEMPLATE).render(
            domain=tls.domain,
            local_names=[n for n in server_names if n != tls.domain],
            certificate_path=tls.certificate_path,
            key_path=tls.key_path,
            **context,
        )

    def write_virtual_host(
        self,
        project: str,
        server_names: list[str],
        document_root: Path,
        tls: TlsMaterial | None = None,
    ) -> Path:
        """Install a fragment and verify nginx accepts it.

        If ``nginx -t`` rejects the result, the previous fragment (or none) is
        restored before WebServerError is raised.
        """
        path = self.fragment_path(project)
        previous = path.read_text() if path.exists() else None

        write_atomic(path, self.render(project, server_names, document_root, tls), FRAGMENT_MODE)
        try:
            self.test_config()
        except WebServerError:
            if previous is None:
                path.unlink(missing_ok=True)
            else:
                write_atomic(path, previous, FRAGMENT_MODE)
            raise

        logger.info(f"Wrote virtual host {path}")
        return path

    def remove_virtual_host(self, project: str) -> bool:
        """Remove a project's fragment. Returns True if one existed."""
        path = self.fragment_path(project)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Removed virtual host {path}")
        return True

    def test_config(self) -> None:
        """Test Nginx configuration syntax."""
        result = self.runner.run(
            Command.build(
                self.config.nginx_bin, "-t", timeout=self.config.local_command_timeout
            )
        )
        if result.timed_out:
            raise WebServerError("Nginx config test timed out")
        if not result.ok:
            raise WebServerError(
                f"Nginx configuration test failed: {result.output}",
                suggestion="Check the site configurations for syntax errors",
            )

    def reload(self) -> None:
        """Reload Nginx gracefully. In-flight connections of other sites survive."""
        result = self.runner.run(
            Command.build(
                "systemctl", "reload", self.config.web_server_unit,
                timeout=self.config.local_command_timeout,
            )
        )
        if result.timed_out:
            raise WebServerError("Nginx reload timed out")
        if not result.ok:
            raise WebServerError(f"Failed to reload Nginx: {result.output}")

    def _timestamp(self) -> str:
        return datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")
