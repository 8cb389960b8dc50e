"""Cloudflare tunnel ingress rules and their DNS records."""

import logging
from typing import Any

import requests
import yaml

from devhost.config import DevHostConfig
from devhost.errors import TunnelError
from devhost.runner import Command, CommandRunner
from devhost.services.project_config import write_atomic

logger = logging.getLogger(__name__)

CATCH_ALL_SERVICE = "http_status:404"
TUNNEL_CONFIG_MODE = 0o640


class TunnelService:
    """Maintains cloudflared's ingress list and the matching CNAME records.

    A rule's id is its hostname: cloudflared matches on hostname and DevHost
    never creates two rules for one host.
    """

    CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"

    def __init__(self, config: DevHostConfig, runner: CommandRunner | None = None) -> None:
        self.config = config
        self.runner = runner or CommandRunner()

    # ─────────────────────────────────────────────────────────────────────────
    # Ingress configuration
    # ─────────────────────────────────────────────────────────────────────────

    def _load(self) -> dict[str, Any]:
        path = self.config.tunnel_config
        data: dict[str, Any] = {}
        if path.exists():
            try:
                data = yaml.safe_load(path.read_text()) or {}
            except yaml.YAMLError as e:
                raise TunnelError(f"Tunnel config {path} is not valid YAML: {e}")
        if self.config.tunnel_id:
            data.setdefault("tunnel", self.config.tunnel_id)
        data.setdefault("ingress", [])
        return data

    def _save(self, data: dict[str, Any]) -> None:
        # cloudflared requires exactly one hostname-less rule, and it must be last
        ingress = [r for r in data["ingress"] if "hostname" in r]
        ingress.append({"service": CATCH_ALL_SERVICE})
        data["ingress"] = ingress
        write_atomic(
            self.config.tunnel_config,
            yaml.safe_dump(data, default_flow_style=False, sort_keys=False),
            TUNNEL_CONFIG_MODE,
        )

    def list_rules(self) -> list[dict[str, Any]]:
        """Hostname rules, excluding the catch-all."""
        return [r for r in self._load()["ingress"] if "hostname" in r]

    def get_rule(self, hostname: str) -> dict[str, Any] | None:
        for rule in self.list_rules():
            if rule["hostname"] == hostname:
                return rule
        return None

    def add_rule(
        self,
        hostname: str,
        service: str,
        origin_request: dict[str, Any] | None = None,
    ) -> str:
        """Add or replace the rule for ``hostname`` ahead of the catch-all."""
        data = self._load()
        rule: dict[str, Any] = {"hostname": hostname, "service": service}
        if origin_request:
            rule["originRequest"] = origin_request

        data["ingress"] = [r for r in data["ingress"] if r.get("hostname") != hostname]
        data["ingress"].insert(self._catch_all_index(data["ingress"]), rule)
        self._save(data)
        logger.info(f"Added tunnel ingress {hostname} -> {service}")
        return hostname

    def remove_rule(self, hostname: str) -> bool:
        """Remove the rule for ``hostname``. Returns True if one existed."""
        data = self._load()
        remaining = [r for r in data["ingress"] if r.get("hostname") != hostname]
        if len(remaining) == len(data["ingress"]):
            return False
        data["ingress"] = remaining
        self._save(data)
        logger.info(f"Removed tunnel ingress {hostname}")
        return True

    @staticmethod
    def _catch_all_index(ingress: list[dict[str, Any]]) -> int:
        for index, rule in enumerate(ingress):
            if "hostname" not in rule:
                return index
        return len(ingress)

    def restart(self) -> None:
        """Restart cloudflared so it picks up the ingress list."""
        result = self.runner.run(
            Command.build(
                "systemctl", "restart", self.config.tunnel_service_unit,
                timeout=self.config.local_command_timeout,
            )
        )
        if not result.ok:
            raise TunnelError(f"Failed to restart {self.config.tunnel_service_unit}: {result.output}")

    # ─────────────────────────────────────────────────────────────────────────
    # DNS records (Cloudflare API)
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def tunnel_target(self) -> str:
        return f"{self.config.tunnel_id}.cfargotunnel.com"

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.cloudflare_api_token}",
            "Content-Type": "application/json",
        }

    def _records_url(self) -> str:
        return f"{self.CLOUDFLARE_API_URL}/zones/{self.config.cloudflare_zone_id}/dns_records"

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = requests.request(method, url, headers=self._get_headers(), timeout=30, **kwargs)
            resp.raise_for_status()
            result = resp.json()
        except requests.RequestException as e:
            raise TunnelError(f"Cloudflare API request failed: {e}")

        if not result.get("success"):
            errors = result.get("errors", [])
            error_msg = errors[0].get("message") if errors else "Unknown error"
            raise TunnelError(f"Cloudflare API error: {error_msg}")
        return result.get("result")

    def get_dns_record(self, hostname: str) -> dict[str, Any] | None:
        records = self._request("GET", self._records_url(), params={"name": hostname})
        return records[0] if records else None

    def ensure_dns_record(self, hostname: str) -> str:
        """Point ``hostname`` at the tunnel with a proxied CNAME. Returns the record id."""
        payload = {
            "type": "CNAME",
            "name": hostname,
            "content": self.tunnel_target,
            "ttl": 1,
            "proxied": True,
        }
        existing = self.get_dns_record(hostname)
        if existing is None:
            record = self._request("POST", self._records_url(), json=payload)
            logger.info(f"Created DNS record {hostname} -> {self.tunnel_target}")
            return record["id"]

        if existing.get("type") == "CNAME" and existing.get("content") == self.tunnel_target:
            return existing["id"]

        record = self._request("PUT", f"{self._records_url()}/{existing['id']}", json=payload)
        logger.info(f"Updated DNS record {hostname} -> {self.tunnel_target}")
        return record["id"]

    def remove_dns_record(self, hostname: str) -> bool:
        """Delete the tunnel CNAME for ``hostname``. Returns True if one existed."""
        existing = self.get_dns_record(hostname)
        if existing is None:
            return False
        self._request("DELETE", f"{self._records_url()}/{existing['id']}")
        logger.info(f"Removed DNS record {hostname}")
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Composite operations
    # ─────────────────────────────────────────────────────────────────────────

    def register(
        self,
        hostname: str,
        service: str,
        origin_request: dict[str, Any] | None = None,
    ) -> str:
        """Route ``hostname`` through the tunnel. Returns the rule id."""
        rule_id = self.add_rule(hostname, service, origin_request)
        self.ensure_dns_record(hostname)
        self.restart()
        return rule_id

    def unregister(self, hostname: str) -> bool:
        """Stop routing ``hostname``. Returns True if anything was removed."""
        removed_rule = self.remove_rule(hostname)
        removed_record = False
        if self.config.cloudflare_api_token and self.config.cloudflare_zone_id:
            removed_record = self.remove_dns_record(hostname)
        if removed_rule:
            self.restart()
        return removed_rule or removed_record
