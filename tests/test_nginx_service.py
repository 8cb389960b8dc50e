"""Tests for nginx virtual host management."""

import pytest

from devhost.errors import WebServerError
from devhost.services.nginx_service import NginxService, TlsMaterial


@pytest.fixture
def nginx(config, fake_runner):
    return NginxService(config, fake_runner)


class TestRender:
    def test_http_fragment(self, nginx, config, tmp_path):
        content = nginx.render("blog", ["blog.localhost"], tmp_path / "blog" / "public")

        assert "server_name blog.localhost;" in content
        assert f"root {tmp_path / 'blog' / 'public'};" in content
        assert f"fastcgi_pass unix:{config.php_fpm_socket};" in content
        assert "try_files $uri $uri/ /index.php?$query_string;" in content
        assert "listen 80;" in content
        assert "listen 443" not in content
        assert "fastcgi_param HTTPS on;" not in content

    def test_tls_fragment(self, nginx, tmp_path):
        tls = TlsMaterial(
            "blog.dev.example.com",
            "/etc/letsencrypt/live/blog.dev.example.com/fullchain.pem",
            "/etc/letsencrypt/live/blog.dev.example.com/privkey.pem",
        )

        content = nginx.render(
            "blog", ["blog.localhost", "blog.dev.example.com"], tmp_path / "public", tls
        )

        assert "return 301 https://$host$request_uri;" in content
        assert "listen 443 ssl;" in content
        assert "ssl_certificate /etc/letsencrypt/live/blog.dev.example.com/fullchain.pem;" in content
        assert content.count("fastcgi_param HTTPS on;") == 1
        # The local name keeps serving plain HTTP
        assert "server_name blog.localhost;" in content


class TestWriteVirtualHost:
    def test_writes_fragment_and_tests_config(self, nginx, fake_runner, tmp_path):
        path = nginx.write_virtual_host("blog", ["blog.localhost"], tmp_path / "public")

        assert path == nginx.fragment_path("blog")
        assert path.name == "blog.conf"
        assert nginx.has_virtual_host("blog")
        assert fake_runner.argvs() == [("nginx", "-t")]

    def test_rejected_new_fragment_is_removed(self, nginx, fake_runner, tmp_path):
        fake_runner.on("nginx", "-t", returncode=1, stderr="unknown directive")

        with pytest.raises(WebServerError) as exc_info:
            nginx.write_virtual_host("blog", ["blog.localhost"], tmp_path / "public")

        assert "unknown directive" in exc_info.value.message
        assert not nginx.has_virtual_host("blog")

    def test_rejected_update_restores_previous(self, nginx, fake_runner, tmp_path):
        path = nginx.write_virtual_host("blog", ["blog.localhost"], tmp_path / "public")
        before = path.read_text()
        fake_runner.on("nginx", "-t", returncode=1, stderr="bad certificate")

        with pytest.raises(WebServerError):
            nginx.write_virtual_host(
                "blog",
                ["blog.localhost", "blog.dev.example.com"],
                tmp_path / "public",
                TlsMaterial("blog.dev.example.com", "/missing/fullchain.pem", "/missing/privkey.pem"),
            )

        assert path.read_text() == before

    def test_other_projects_untouched(self, nginx, tmp_path):
        other = nginx.write_virtual_host("shop", ["shop.localhost"], tmp_path / "shop")
        content = other.read_text()

        nginx.write_virtual_host("blog", ["blog.localhost"], tmp_path / "blog")
        nginx.remove_virtual_host("blog")

        assert other.read_text() == content

    def test_remove_missing(self, nginx):
        assert nginx.remove_virtual_host("blog") is False


class TestServiceControl:
    def test_reload_never_restarts(self, nginx, fake_runner):
        nginx.reload()
        assert fake_runner.argvs() == [("systemctl", "reload", "nginx")]

    def test_reload_failure(self, nginx, fake_runner):
        fake_runner.on("systemctl", "reload", returncode=1, stderr="Job failed")

        with pytest.raises(WebServerError):
            nginx.reload()

    def test_config_test_timeout(self, nginx, fake_runner):
        fake_runner.on("nginx", timed_out=True, returncode=-1)

        with pytest.raises(WebServerError) as exc_info:
            nginx.test_config()

        assert "timed out" in exc_info.value.message

    def test_ensure_include(self, nginx, config):
        assert nginx.ensure_include() is True
        assert nginx.include_file.read_text().endswith(
            f"include {config.nginx_include_dir}/*.conf;\n"
        )
        assert nginx.ensure_include() is False
