"""Virtual host, domain, TLS and tunnel routing for a project."""

import logging
from pathlib import Path
from typing import Any

from devhost.config import DevHostConfig
from devhost.errors import DomainChallengeFailed
from devhost.models import RoutingBinding, TlsState, transition_tls
from devhost.runner import CommandRunner
from devhost.saga import Saga
from devhost.services.nginx_service import NginxService, TlsMaterial
from devhost.services.tls_service import TLSService
from devhost.services.tunnel_service import TunnelService

logger = logging.getLogger(__name__)


class RoutingConfigurator:
    """Composes nginx, certbot and cloudflared into one routing binding.

    Owns every ``tls_state`` change of a binding and enforces the allowed
    transitions through ``transition_tls``.
    """

    def __init__(
        self,
        config: DevHostConfig,
        runner: CommandRunner | None = None,
        nginx: NginxService | None = None,
        tls: TLSService | None = None,
        tunnel: TunnelService | None = None,
    ) -> None:
        self.config = config
        runner = runner or CommandRunner()
        self.nginx = nginx or NginxService(config, runner)
        self.tls = tls or TLSService(config, runner)
        self.tunnel = tunnel or TunnelService(config, runner)

    def server_names(self, name: str) -> list[str]:
        names = [self.config.local_hostname(name)]
        domain = self.config.project_domain(name)
        if domain and self.config.remote_access_enabled:
            names.append(domain)
        return names

    # ─────────────────────────────────────────────────────────────────────────
    # Virtual host
    # ─────────────────────────────────────────────────────────────────────────

    def configure_virtual_host(
        self,
        name: str,
        root: Path,
        saga: Saga | None = None,
    ) -> RoutingBinding:
        """Install the project's fragment and reload (never restart) nginx."""
        names = self.server_names(name)
        path = self.nginx.write_virtual_host(name, names, root / "public")
        if saga is not None:
            saga.add(f"virtual host {path}", lambda: self.remove_virtual_host(name))
        self.nginx.reload()
        return RoutingBinding(virtual_host_path=path, server_name=names[0])

    def remove_virtual_host(self, name: str) -> bool:
        removed = self.nginx.remove_virtual_host(name)
        if removed:
            self.nginx.reload()
        return removed

    # ─────────────────────────────────────────────────────────────────────────
    # Domain, TLS and tunnel
    # ─────────────────────────────────────────────────────────────────────────

    def configure_domain(
        self,
        name: str,
        root: Path,
        binding: RoutingBinding,
        saga: Saga | None = None,
    ) -> RoutingBinding:
        """Issue a certificate and route ``<name>.<base_domain>`` through the tunnel.

        Without a base domain and remote-access credentials this is a no-op
        that leaves ``tls_state`` at none. A failed DNS challenge is logged
        and leaves the binding at none; tunnel failures propagate.
        """
        if not self.config.remote_access_enabled:
            logger.debug(f"{name}: remote access not configured, skipping domain setup")
            return binding

        domain = self.config.project_domain(name)
        binding.domain = domain

        if self._issue(name, root, binding) and saga is not None:
            saga.add(f"certificate {domain}", lambda: self.tls.delete(domain))

        if saga is not None:
            saga.add(f"tunnel rule {domain}", lambda: self.tunnel.unregister(domain))
        self._route_tunnel(binding)
        return binding

    def _issue(self, name: str, root: Path, binding: RoutingBinding) -> bool:
        """Drive none/expired -> pending -> issued. Returns True on success."""
        binding.tls_state = transition_tls(binding.tls_state, TlsState.PENDING)
        try:
            material = self.tls.issue(binding.domain)
        except DomainChallengeFailed as e:
            logger.warning(f"{name}: {e.message}; continuing without TLS")
            binding.tls_state = transition_tls(binding.tls_state, TlsState.NONE)
            return False

        binding.tls_state = transition_tls(binding.tls_state, TlsState.ISSUED)
        self._install_certificate(name, root, binding, material)
        return True

    def _install_certificate(
        self, name: str, root: Path, binding: RoutingBinding, material: dict[str, Any]
    ) -> None:
        binding.certificate_path = material["certificate_path"]
        binding.key_path = material["key_path"]
        self.nginx.write_virtual_host(
            name,
            self.server_names(name),
            root / "public",
            TlsMaterial(binding.domain, binding.certificate_path, binding.key_path),
        )
        self.nginx.reload()

    def _route_tunnel(self, binding: RoutingBinding) -> None:
        if binding.tls_state in (TlsState.ISSUED, TlsState.EXPIRED):
            # Plain HTTP redirects once TLS is installed, so the origin is HTTPS
            service = "https://localhost:443"
            origin_request = {"originServerName": binding.domain}
        else:
            service = f"http://localhost:{self.config.http_port}"
            origin_request = None
        binding.tunnel_rule_id = self.tunnel.register(binding.domain, service, origin_request)

    def refresh_tls(self, name: str, root: Path, binding: RoutingBinding) -> RoutingBinding:
        """Apply the external renewal signal to a binding.

        issued -> expired once the installed certificate has lapsed; expired
        -> issued after a successful renewal; none -> issued when a new
        challenge succeeds.
        """
        if not self.config.remote_access_enabled or not binding.domain:
            return binding

        if binding.tls_state is TlsState.ISSUED and self.tls.is_expired(binding.domain):
            binding.tls_state = transition_tls(binding.tls_state, TlsState.EXPIRED)
            logger.warning(f"{name}: certificate for {binding.domain} has expired")

        if binding.tls_state is TlsState.EXPIRED:
            try:
                material = self.tls.renew(binding.domain)
            except DomainChallengeFailed as e:
                logger.warning(f"{name}: {e.message}")
                return binding
            binding.tls_state = transition_tls(binding.tls_state, TlsState.ISSUED)
            self._install_certificate(name, root, binding, material)
        elif binding.tls_state is TlsState.NONE and self._issue(name, root, binding):
            self._route_tunnel(binding)

        return binding

    def teardown(self, name: str, binding: RoutingBinding | None = None) -> list[str]:
        """Remove tunnel rule, then virtual host (with reload), then certificate.

        Works from derived names alone when no binding is known. Returns the
        artifacts removed.
        """
        removed: list[str] = []
        domain = (binding.domain if binding else None) or self.config.project_domain(name)

        if domain and (self.config.remote_access_enabled or self.tunnel.get_rule(domain)):
            if self.tunnel.unregister(domain):
                removed.append(f"tunnel rule {domain}")

        if self.remove_virtual_host(name):
            removed.append(f"virtual host {self.nginx.fragment_path(name)}")

        if domain and self.tls.delete(domain):
            removed.append(f"certificate {domain}")
        return removed
