"""
TLS certificate provisioning for custom domains.

Two interchangeable providers sit behind CertificateProvider:

- EdgeSaasProvider binds the hostname to the platform origin through the
  Cloudflare for SaaS custom hostnames API and lets the edge issue TLS.
- AcmeProvider issues certificates with certbot (HTTP-01 or DNS-01).

The provider is chosen once from settings by build_provider().
"""

import abc
import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..config import Settings
from .errors import ProvisioningFatalError, ProvisioningTransientError
from .models import CustomDomain

logger = logging.getLogger("customdomain.domains.ssl")


class ProviderStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class PollResult:
    """Certificate state as reported by the provider."""

    status: ProviderStatus
    expires_at: Optional[datetime] = None
    detail: str = ""


class CertificateProvider(abc.ABC):
    """
    Provisions, polls and renews certificates for verified domains.

    Implementations raise ProvisioningTransientError for timeouts,
    connection failures and 5xx-class responses, and
    ProvisioningFatalError for definitive rejections.
    """

    name = "base"

    @abc.abstractmethod
    async def create(self, domain: CustomDomain) -> str:
        """Request a certificate; returns the provider reference."""

    @abc.abstractmethod
    async def poll_status(self, provider_ref: str) -> PollResult:
        """Report the current certificate state."""

    @abc.abstractmethod
    async def renew(self, provider_ref: str) -> PollResult:
        """Start or perform renewal; returns the resulting state."""

    async def close(self) -> None:
        pass


# ── Edge SaaS (Cloudflare for SaaS) ──────────────────────────────────

# Custom hostname / ssl states that will never become active
_EDGE_FAILED_SSL = {
    "validation_timed_out",
    "issuance_timed_out",
    "deployment_timed_out",
    "deletion_timed_out",
    "pending_deletion",
    "deleted",
    "expired",
}
_EDGE_FAILED_HOSTNAME = {"blocked", "moved", "deleted"}

# Cloudflare error code for an already-registered custom hostname
_EDGE_DUPLICATE_CODE = 1406


class EdgeSaasProvider(CertificateProvider):
    """Custom hostnames on a Cloudflare for SaaS zone."""

    name = "edge-saas"

    def __init__(
        self,
        api_token: str,
        zone_id: str,
        fallback_domain: str,
        api_base: str = "https://api.cloudflare.com/client/v4",
        ssl_method: str = "http",
        timeout: float = 30.0,
    ):
        self.api_token = api_token
        self.zone_id = zone_id
        self.fallback_domain = fallback_domain.lower().rstrip(".")
        self.api_base = api_base.rstrip("/")
        self.ssl_method = ssl_method
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._session

    def _url(self, suffix: str = "") -> str:
        return f"{self.api_base}/zones/{self.zone_id}/custom_hostnames{suffix}"

    def _ssl_settings(self) -> dict:
        return {
            "method": self.ssl_method,
            "type": "dv",
            "settings": {"min_tls_version": "1.2"},
        }

    async def _request(
        self,
        method: str,
        url: str,
        payload: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """Perform an API call; raises ProvisioningTransientError on
        timeouts, connection errors, 429 and 5xx."""
        session = self._get_session()
        try:
            async with session.request(method, url, json=payload, params=params) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = {}
                status = resp.status
            if not isinstance(body, dict):
                body = {}
        except asyncio.TimeoutError as e:
            raise ProvisioningTransientError(
                f"{method} {url} timed out after {self.timeout}s"
            ) from e
        except aiohttp.ClientError as e:
            raise ProvisioningTransientError(f"{method} {url} failed: {e}") from e

        if status == 429 or status >= 500:
            raise ProvisioningTransientError(
                f"{method} {url} returned {status}: {self._errors(body)}"
            )
        return status, body

    @staticmethod
    def _errors(body: Dict[str, Any]) -> str:
        errors = body.get("errors") or []
        return "; ".join(
            f"{e.get('code')}: {e.get('message')}" for e in errors
        ) or "no error detail"

    @staticmethod
    def _error_codes(body: Dict[str, Any]) -> List[int]:
        return [e.get("code") for e in body.get("errors") or []]

    async def create(self, domain: CustomDomain) -> str:
        payload = {
            "hostname": domain.hostname,
            "ssl": self._ssl_settings(),
            "custom_origin_server": self.fallback_domain,
        }
        status, body = await self._request("POST", self._url(), payload)

        if status < 400 and body.get("success"):
            hostname_id = body["result"]["id"]
            logger.info(f"Created custom hostname {domain.hostname} ({hostname_id})")
            return hostname_id

        if status == 409 or _EDGE_DUPLICATE_CODE in self._error_codes(body):
            # Created on an earlier attempt whose result was never recorded
            existing = await self._find_by_hostname(domain.hostname)
            if existing:
                logger.info(
                    f"Custom hostname {domain.hostname} already exists ({existing})"
                )
                return existing

        raise ProvisioningFatalError(
            f"Edge provider rejected {domain.hostname}: {self._errors(body)}"
        )

    async def _find_by_hostname(self, hostname: str) -> Optional[str]:
        status, body = await self._request(
            "GET", self._url(), params={"hostname": hostname}
        )
        if status >= 400:
            return None
        for entry in body.get("result") or []:
            if entry.get("hostname", "").lower() == hostname:
                return entry["id"]
        return None

    def _to_poll_result(self, result: Dict[str, Any]) -> PollResult:
        hostname_status = result.get("status", "")
        ssl = result.get("ssl") or {}
        ssl_status = ssl.get("status", "")

        expires_at = None
        for cert in ssl.get("certificates") or []:
            if cert.get("expires_on"):
                candidate = datetime.fromisoformat(cert["expires_on"].replace("Z", "+00:00"))
                if expires_at is None or candidate > expires_at:
                    expires_at = candidate

        detail = f"hostname={hostname_status} ssl={ssl_status}"
        if hostname_status in _EDGE_FAILED_HOSTNAME or ssl_status in _EDGE_FAILED_SSL:
            errors = ssl.get("validation_errors") or []
            if errors:
                detail += " " + "; ".join(e.get("message", "") for e in errors)
            return PollResult(ProviderStatus.FAILED, expires_at, detail)
        if hostname_status == "active" and ssl_status == "active":
            return PollResult(ProviderStatus.ACTIVE, expires_at, detail)
        return PollResult(ProviderStatus.PENDING, expires_at, detail)

    async def poll_status(self, provider_ref: str) -> PollResult:
        status, body = await self._request("GET", self._url(f"/{provider_ref}"))
        if status >= 400 or not body.get("success"):
            raise ProvisioningFatalError(
                f"Custom hostname {provider_ref} unavailable: {self._errors(body)}"
            )
        return self._to_poll_result(body.get("result") or {})

    async def renew(self, provider_ref: str) -> PollResult:
        # Re-submitting the SSL settings restarts validation and issuance
        status, body = await self._request(
            "PATCH", self._url(f"/{provider_ref}"), {"ssl": self._ssl_settings()}
        )
        if status >= 400 or not body.get("success"):
            raise ProvisioningFatalError(
                f"Renewal rejected for {provider_ref}: {self._errors(body)}"
            )
        return self._to_poll_result(body.get("result") or {})

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


# ── ACME (certbot) ───────────────────────────────────────────────────

# certbot output fragments that indicate a retryable failure
_ACME_TRANSIENT_MARKERS = (
    "rateLimited",
    "too many",
    "timeout",
    "timed out",
    "connection",
    "temporarily",
    "serverInternal",
    "badNonce",
    "another instance of certbot",
)


class AcmeProvider(CertificateProvider):
    """Issues and renews certificates via certbot."""

    name = "acme"

    def __init__(
        self,
        server: str = "https://acme-v02.api.letsencrypt.org/directory",
        email: Optional[str] = None,
        challenge: str = "http-01",
        webroot: str = "/var/www/acme",
        dns_plugin: str = "dns-cloudflare",
        dns_credentials: Optional[str] = None,
        certbot_bin: str = "certbot",
        config_dir: str = "/etc/letsencrypt",
        timeout: float = 120.0,
    ):
        self.server = server
        self.email = email
        self.challenge = challenge
        self.webroot = webroot
        self.dns_plugin = dns_plugin
        self.dns_credentials = dns_credentials
        self.certbot_bin = certbot_bin
        self.config_dir = config_dir
        self.timeout = timeout

    def _cert_path(self, cert_name: str) -> str:
        return os.path.join(self.config_dir, "live", cert_name, "fullchain.pem")

    def _certonly_cmd(self, hostname: str, force_renewal: bool = False) -> List[str]:
        cmd = [
            self.certbot_bin,
            "certonly",
            "--cert-name", hostname,
            "-d", hostname,
            "--server", self.server,
            "--config-dir", self.config_dir,
            "--non-interactive",
            "--agree-tos",
        ]
        if self.challenge == "dns-01":
            cmd.extend([
                "--preferred-challenges", "dns",
                f"--{self.dns_plugin}",
            ])
            if self.dns_credentials:
                cmd.extend([f"--{self.dns_plugin}-credentials", self.dns_credentials])
        else:
            cmd.extend(["--webroot", "-w", self.webroot])

        if self.email:
            cmd.extend(["--email", self.email])
        else:
            cmd.append("--register-unsafely-without-email")

        cmd.append("--force-renewal" if force_renewal else "--keep-until-expiring")
        return cmd

    async def _run(self, cmd: List[str], timeout: float) -> Tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            # Deployment problem; retry once the binary is installed
            raise ProvisioningTransientError(f"{cmd[0]} not found") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ProvisioningTransientError(
                f"{cmd[0]} timed out after {timeout}s"
            ) from e

        return process.returncode, stdout.decode().strip(), stderr.decode().strip()

    async def _certbot(self, hostname: str, force_renewal: bool = False) -> None:
        cmd = self._certonly_cmd(hostname, force_renewal=force_renewal)
        logger.info(f"Running certbot for {hostname}")
        returncode, stdout, stderr = await self._run(cmd, self.timeout)
        if returncode == 0:
            logger.info(f"Certbot succeeded for {hostname}")
            return

        error_msg = stderr or stdout
        lowered = error_msg.lower()
        if any(marker.lower() in lowered for marker in _ACME_TRANSIENT_MARKERS):
            raise ProvisioningTransientError(f"Certbot failed: {error_msg}")
        raise ProvisioningFatalError(f"Certbot failed: {error_msg}")

    async def create(self, domain: CustomDomain) -> str:
        await self._certbot(domain.hostname)
        return domain.hostname

    def cert_exists(self, cert_name: str) -> bool:
        """Check if certificate material exists for the cert name."""
        return os.path.exists(self._cert_path(cert_name))

    async def cert_expiry(self, cert_name: str) -> Optional[datetime]:
        """Get certificate expiry date via openssl."""
        cert_path = self._cert_path(cert_name)
        returncode, stdout, stderr = await self._run(
            ["openssl", "x509", "-enddate", "-noout", "-in", cert_path], 30
        )
        if returncode != 0:
            logger.warning(f"Failed to read cert expiry for {cert_name}: {stderr}")
            return None

        # Output format: notAfter=Mon DD HH:MM:SS YYYY GMT
        if "=" not in stdout:
            return None
        date_str = stdout.split("=", 1)[1]
        return parsedate_to_datetime(date_str).replace(tzinfo=timezone.utc)

    async def poll_status(self, provider_ref: str) -> PollResult:
        if not self.cert_exists(provider_ref):
            return PollResult(
                ProviderStatus.FAILED,
                detail=f"No certificate material for {provider_ref}",
            )
        expires_at = await self.cert_expiry(provider_ref)
        return PollResult(ProviderStatus.ACTIVE, expires_at, "certificate issued")

    async def renew(self, provider_ref: str) -> PollResult:
        await self._certbot(provider_ref, force_renewal=True)
        return await self.poll_status(provider_ref)


def build_provider(settings: Settings) -> CertificateProvider:
    """Select the certificate provider for this deployment."""
    if settings.ssl_provider == "edge-saas":
        return EdgeSaasProvider(
            api_token=settings.cloudflare_api_token,
            zone_id=settings.cloudflare_zone_id,
            fallback_domain=settings.fallback_domain,
            api_base=settings.cloudflare_api_base,
            ssl_method="txt" if settings.verification_method == "txt" else "http",
            timeout=settings.provider_timeout_seconds,
        )
    return AcmeProvider(
        server=settings.acme_server,
        email=settings.acme_email or None,
        challenge=settings.acme_challenge,
        webroot=settings.acme_webroot,
        dns_plugin=settings.acme_dns_plugin,
        dns_credentials=settings.acme_dns_credentials,
        certbot_bin=settings.certbot_bin,
        config_dir=settings.certbot_config_dir,
        timeout=settings.acme_timeout_seconds,
    )
