"""Let's Encrypt certificates through certbot's Cloudflare DNS challenge."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from devhost.config import DevHostConfig
from devhost.errors import DomainChallengeFailed
from devhost.runner import Command, CommandRunner
from devhost.services.project_config import write_atomic

logger = logging.getLogger(__name__)

CERTBOT_BIN = "certbot"
CREDENTIALS_MODE = 0o600
DNS_PROPAGATION_SECONDS = 30


class TLSService:
    """Issues, inspects, renews and removes per-domain certificates.

    The DNS challenge itself is certbot's business; this service only builds
    the invocation and interprets the outcome.
    """

    def __init__(self, config: DevHostConfig, runner: CommandRunner | None = None) -> None:
        self.config = config
        self.runner = runner or CommandRunner()

    def certificate_paths(self, domain: str) -> tuple[Path, Path]:
        """Full chain and private key locations for ``domain``."""
        live = self.config.letsencrypt_live / domain
        return live / "fullchain.pem", live / "privkey.pem"

    def has_certificate(self, domain: str) -> bool:
        certificate, key = self.certificate_paths(domain)
        return certificate.exists() and key.exists()

    def ensure_credentials_file(self) -> Path:
        """Write certbot's dns-cloudflare credentials file from the configured token."""
        path = self.config.cloudflare_credentials_file
        if path.exists():
            return path
        if not self.config.cloudflare_api_token:
            raise DomainChallengeFailed(
                "",
                "No Cloudflare API token configured for the DNS challenge",
                suggestion="Set cloudflare_api_token in the DevHost config",
            )
        write_atomic(
            path,
            f"dns_cloudflare_api_token = {self.config.cloudflare_api_token}\n",
            CREDENTIALS_MODE,
        )
        return path

    def issue(self, domain: str) -> dict[str, Any]:
        """Request a certificate for ``domain``.

        Raises DomainChallengeFailed on any failure; no partial certificate is
        reported in that case.
        """
        credentials = self.ensure_credentials_file()

        argv = [
            CERTBOT_BIN,
            "certonly",
            "--dns-cloudflare",
            "--dns-cloudflare-credentials", str(credentials),
            "--dns-cloudflare-propagation-seconds", str(DNS_PROPAGATION_SECONDS),
            "-d", domain,
            "--cert-name", domain,
            "--non-interactive",
            "--agree-tos",
            "--keep-until-expiring",
        ]
        if self.config.admin_email:
            argv += ["--email", self.config.admin_email]
        else:
            argv.append("--register-unsafely-without-email")

        result = self.runner.run(Command.build(*argv, timeout=self.config.tls_timeout))
        if not result.ok:
            raise DomainChallengeFailed(domain, self._describe_failure(domain, result))

        certificate, key = self.certificate_paths(domain)
        logger.info(f"Certificate issued for {domain}")
        return {
            "domain": domain,
            "certificate_path": str(certificate),
            "key_path": str(key),
        }

    def _describe_failure(self, domain: str, result: Any) -> str:
        output = result.output
        if result.returncode == 127:
            return "Certbot is not installed (apt install certbot python3-certbot-dns-cloudflare)"
        if result.timed_out:
            return f"DNS challenge for '{domain}' timed out"
        if "rate limit" in output.lower():
            return "Let's Encrypt rate limit reached"
        if "DNS problem" in output or "NXDOMAIN" in output:
            return f"DNS challenge for '{domain}' failed: {output[-500:]}"
        return f"Certificate issuance for '{domain}' failed: {output[-500:]}"

    def expires_at(self, domain: str) -> datetime | None:
        """Expiry of the installed certificate, or None if there is none."""
        certificate, _ = self.certificate_paths(domain)
        if not certificate.exists():
            return None

        result = self.runner.run(
            Command.build(
                "openssl", "x509", "-enddate", "-noout", "-in", certificate,
                timeout=self.config.local_command_timeout,
            )
        )
        if not result.ok:
            logger.warning(f"Could not read expiry of {certificate}: {result.output}")
            return None
        return parse_enddate(result.stdout)

    def is_expired(self, domain: str, now: datetime | None = None) -> bool:
        expiry = self.expires_at(domain)
        if expiry is None:
            return False
        return expiry <= (now or datetime.now(timezone.utc))

    def renew(self, domain: str) -> dict[str, Any]:
        """Renew ``domain``'s certificate through the same DNS challenge."""
        self.ensure_credentials_file()
        result = self.runner.run(
            Command.build(
                CERTBOT_BIN, "renew", "--cert-name", domain, "--non-interactive",
                timeout=self.config.tls_timeout,
            )
        )
        if not result.ok:
            raise DomainChallengeFailed(domain, self._describe_failure(domain, result))
        logger.info(f"Certificate renewed for {domain}")
        certificate, key = self.certificate_paths(domain)
        return {"domain": domain, "certificate_path": str(certificate), "key_path": str(key)}

    def delete(self, domain: str) -> bool:
        """Remove ``domain``'s certificate lineage. Returns True if one existed."""
        if not (self.config.letsencrypt_live / domain).exists():
            return False
        result = self.runner.run(
            Command.build(
                CERTBOT_BIN, "delete", "--cert-name", domain, "--non-interactive",
                timeout=self.config.local_command_timeout,
            )
        )
        if not result.ok:
            raise DomainChallengeFailed(
                domain,
                f"Failed to delete certificate for '{domain}': {result.output}",
                suggestion=f"Run 'certbot delete --cert-name {domain}' manually",
            )
        return True


def parse_enddate(output: str) -> datetime | None:
    """Parse ``notAfter=Jan  2 03:04:05 2030 GMT`` from openssl."""
    _, sep, value = output.strip().partition("=")
    if not sep:
        return None
    try:
        parsed = datetime.strptime(" ".join(value.split()), "%b %d %H:%M:%S %Y %Z")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)
