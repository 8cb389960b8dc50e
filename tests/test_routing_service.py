"""Tests for composing virtual host, certificate and tunnel routing."""

from unittest.mock import MagicMock

import pytest

from devhost.errors import DomainChallengeFailed, TunnelError, WebServerError
from devhost.models import RoutingBinding, TlsState
from devhost.saga import Saga
from devhost.services.nginx_service import NginxService
from devhost.services.routing_service import RoutingConfigurator

DOMAIN = "blog.dev.example.com"


@pytest.fixture
def tls():
    service = MagicMock()
    service.issue.return_value = {
        "domain": DOMAIN,
        "certificate_path": f"/live/{DOMAIN}/fullchain.pem",
        "key_path": f"/live/{DOMAIN}/privkey.pem",
    }
    service.renew.return_value = service.issue.return_value
    service.delete.return_value = True
    service.is_expired.return_value = False
    return service


@pytest.fixture
def tunnel():
    service = MagicMock()
    service.register.side_effect = lambda hostname, url, origin_request=None: hostname
    service.unregister.return_value = True
    service.get_rule.return_value = None
    return service


def make_routing(cfg, runner, tls, tunnel):
    return RoutingConfigurator(cfg, runner, NginxService(cfg, runner), tls, tunnel)


class TestVirtualHost:
    def test_local_only(self, config, fake_runner, tls, tunnel, tmp_path):
        routing = make_routing(config, fake_runner, tls, tunnel)
        saga = Saga("test")

        binding = routing.configure_virtual_host("blog", tmp_path, saga)

        assert binding.server_name == "blog.localhost"
        assert binding.virtual_host_path.exists()
        assert saga.artifacts == [f"virtual host {binding.virtual_host_path}"]
        assert fake_runner.argvs() == [("nginx", "-t"), ("systemctl", "reload", "nginx")]

    def test_domain_added_to_server_names(self, remote_config, fake_runner, tls, tunnel):
        routing = make_routing(remote_config, fake_runner, tls, tunnel)
        assert routing.server_names("blog") == ["blog.localhost", DOMAIN]

    def test_reload_failure_still_leaves_undo(self, config, fake_runner, tls, tunnel, tmp_path):
        fake_runner.on("systemctl", "reload", returncode=1, once=True)
        routing = make_routing(config, fake_runner, tls, tunnel)
        saga = Saga("test")

        with pytest.raises(WebServerError):
            routing.configure_virtual_host("blog", tmp_path, saga)

        assert saga.compensate() == []
        assert not routing.nginx.has_virtual_host("blog")


class TestDomain:
    def test_noop_without_remote_access(self, config, fake_runner, tls, tunnel, tmp_path):
        routing = make_routing(config, fake_runner, tls, tunnel)
        binding = RoutingBinding(server_name="blog.localhost")

        result = routing.configure_domain("blog", tmp_path, binding, Saga("test"))

        assert result.tls_state is TlsState.NONE
        assert result.domain is None
        tls.issue.assert_not_called()
        tunnel.register.assert_not_called()

    def test_issues_certificate_and_routes_https(self, remote_config, fake_runner, tls, tunnel, tmp_path):
        routing = make_routing(remote_config, fake_runner, tls, tunnel)
        binding = routing.configure_virtual_host("blog", tmp_path)
        saga = Saga("test")

        routing.configure_domain("blog", tmp_path, binding, saga)

        assert binding.tls_state is TlsState.ISSUED
        assert binding.tunnel_rule_id == DOMAIN
        tunnel.register.assert_called_once_with(
            DOMAIN, "https://localhost:443", {"originServerName": DOMAIN}
        )
        assert "ssl_certificate" in binding.virtual_host_path.read_text()
        assert saga.artifacts == [f"certificate {DOMAIN}", f"tunnel rule {DOMAIN}"]

    def test_failed_challenge_falls_back_to_http(self, remote_config, fake_runner, tls, tunnel, tmp_path):
        tls.issue.side_effect = DomainChallengeFailed(DOMAIN, "DNS problem")
        routing = make_routing(remote_config, fake_runner, tls, tunnel)
        binding = routing.configure_virtual_host("blog", tmp_path)

        routing.configure_domain("blog", tmp_path, binding, Saga("test"))

        assert binding.tls_state is TlsState.NONE
        tunnel.register.assert_called_once_with(DOMAIN, "http://localhost:80", None)
        assert "ssl_certificate" not in binding.virtual_host_path.read_text()

    def test_tunnel_failure_propagates_with_undo(self, remote_config, fake_runner, tls, tunnel, tmp_path):
        tunnel.register.side_effect = TunnelError("api down")
        routing = make_routing(remote_config, fake_runner, tls, tunnel)
        binding = routing.configure_virtual_host("blog", tmp_path)
        saga = Saga("test")

        with pytest.raises(TunnelError):
            routing.configure_domain("blog", tmp_path, binding, saga)

        assert saga.compensate() == []
        tunnel.unregister.assert_called_once_with(DOMAIN)
        tls.delete.assert_called_once_with(DOMAIN)


class TestRefresh:
    def issued_binding(self, routing, tmp_path):
        binding = routing.configure_virtual_host("blog", tmp_path)
        routing.configure_domain("blog", tmp_path, binding)
        return binding

    def test_expired_certificate_is_renewed(self, remote_config, fake_runner, tls, tunnel, tmp_path):
        routing = make_routing(remote_config, fake_runner, tls, tunnel)
        binding = self.issued_binding(routing, tmp_path)
        tls.is_expired.return_value = True

        routing.refresh_tls("blog", tmp_path, binding)

        tls.renew.assert_called_once_with(DOMAIN)
        assert binding.tls_state is TlsState.ISSUED

    def test_failed_renewal_stays_expired(self, remote_config, fake_runner, tls, tunnel, tmp_path):
        routing = make_routing(remote_config, fake_runner, tls, tunnel)
        binding = self.issued_binding(routing, tmp_path)
        tls.is_expired.return_value = True
        tls.renew.side_effect = DomainChallengeFailed(DOMAIN, "rate limit")

        routing.refresh_tls("blog", tmp_path, binding)

        assert binding.tls_state is TlsState.EXPIRED

    def test_retry_after_failed_issue(self, remote_config, fake_runner, tls, tunnel, tmp_path):
        routing = make_routing(remote_config, fake_runner, tls, tunnel)
        tls.issue.side_effect = [DomainChallengeFailed(DOMAIN, "DNS problem"), tls.issue.return_value]
        binding = self.issued_binding(routing, tmp_path)
        assert binding.tls_state is TlsState.NONE

        routing.refresh_tls("blog", tmp_path, binding)

        assert binding.tls_state is TlsState.ISSUED
        assert tunnel.register.call_args[0][1] == "https://localhost:443"


class TestTeardown:
    def test_removes_in_order(self, remote_config, fake_runner, tls, tunnel, tmp_path):
        routing = make_routing(remote_config, fake_runner, tls, tunnel)
        order = []
        tunnel.unregister.side_effect = lambda domain: order.append("tunnel") or True
        tls.delete.side_effect = lambda domain: order.append("certificate") or True
        routing.configure_virtual_host("blog", tmp_path)

        removed = routing.teardown("blog")

        assert order == ["tunnel", "certificate"]
        assert removed == [
            f"tunnel rule {DOMAIN}",
            f"virtual host {routing.nginx.fragment_path('blog')}",
            f"certificate {DOMAIN}",
        ]
        assert not routing.nginx.has_virtual_host("blog")

    def test_local_only_teardown(self, config, fake_runner, tls, tunnel, tmp_path):
        routing = make_routing(config, fake_runner, tls, tunnel)
        routing.configure_virtual_host("blog", tmp_path)

        removed = routing.teardown("blog")

        assert removed == [f"virtual host {routing.nginx.fragment_path('blog')}"]
        tunnel.unregister.assert_not_called()
        tls.delete.assert_not_called()
