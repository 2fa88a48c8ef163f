"""
Tests for the certificate providers.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from customdomain.config import Settings
from customdomain.domains.errors import ProvisioningFatalError, ProvisioningTransientError
from customdomain.domains.models import CustomDomain, DomainStatus
from customdomain.domains.ssl import (
    AcmeProvider,
    EdgeSaasProvider,
    ProviderStatus,
    build_provider,
)


def make_domain(hostname="app.example.org"):
    return CustomDomain(
        team_id="T1",
        hostname=hostname,
        status=DomainStatus.VERIFIED,
        verification_deadline=datetime.now(timezone.utc) + timedelta(hours=72),
    )


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def json(self, content_type=None):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; replays queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, json=None, params=None):
        self.requests.append((method, url, json, params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


def edge_provider(*responses):
    provider = EdgeSaasProvider(
        api_token="token",
        zone_id="zone123",
        fallback_domain="App.Example.com.",
        api_base="https://api.test/client/v4/",
    )
    provider._session = FakeSession(*responses)
    return provider


def hostname_result(status="active", ssl_status="active", certificates=None, **ssl):
    return {
        "success": True,
        "errors": [],
        "result": {
            "id": "cf-123",
            "hostname": "app.example.org",
            "status": status,
            "ssl": {
                "status": ssl_status,
                "certificates": certificates or [],
                **ssl,
            },
        },
    }


# ── Edge SaaS provider ───────────────────────────────────────────────


class TestEdgeSaasProvider:
    @pytest.mark.asyncio
    async def test_create(self):
        provider = edge_provider(FakeResponse(201, hostname_result("pending", "initializing")))

        ref = await provider.create(make_domain())

        assert ref == "cf-123"
        method, url, payload, _ = provider._session.requests[0]
        assert method == "POST"
        assert url == "https://api.test/client/v4/zones/zone123/custom_hostnames"
        assert payload["hostname"] == "app.example.org"
        assert payload["custom_origin_server"] == "app.example.com"
        assert payload["ssl"]["method"] == "http"
        assert payload["ssl"]["type"] == "dv"

    @pytest.mark.asyncio
    async def test_create_duplicate_returns_existing(self):
        duplicate = {
            "success": False,
            "errors": [{"code": 1406, "message": "Duplicate custom hostname found."}],
        }
        listing = {
            "success": True,
            "result": [{"id": "cf-existing", "hostname": "app.example.org"}],
        }
        provider = edge_provider(FakeResponse(409, duplicate), FakeResponse(200, listing))

        assert await provider.create(make_domain()) == "cf-existing"
        method, _, _, params = provider._session.requests[1]
        assert method == "GET"
        assert params == {"hostname": "app.example.org"}

    @pytest.mark.asyncio
    async def test_create_rejected_is_fatal(self):
        rejected = {
            "success": False,
            "errors": [{"code": 1409, "message": "hostname is prohibited"}],
        }
        provider = edge_provider(FakeResponse(400, rejected))

        with pytest.raises(ProvisioningFatalError, match="prohibited"):
            await provider.create(make_domain())

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        provider = edge_provider(FakeResponse(503, ValueError("not json")))

        with pytest.raises(ProvisioningTransientError, match="503"):
            await provider.create(make_domain())

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        provider = edge_provider(FakeResponse(429, {"success": False, "errors": []}))

        with pytest.raises(ProvisioningTransientError):
            await provider.poll_status("cf-123")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        provider = edge_provider(aiohttp.ClientConnectionError("refused"))

        with pytest.raises(ProvisioningTransientError, match="refused"):
            await provider.poll_status("cf-123")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        provider = edge_provider(asyncio.TimeoutError())

        with pytest.raises(ProvisioningTransientError, match="timed out"):
            await provider.poll_status("cf-123")

    @pytest.mark.asyncio
    async def test_poll_active_with_expiry(self):
        certificates = [
            {"expires_on": "2026-05-30T12:00:00Z"},
            {"expires_on": "2026-06-01T12:00:00Z"},
        ]
        provider = edge_provider(
            FakeResponse(200, hostname_result(certificates=certificates))
        )

        result = await provider.poll_status("cf-123")

        assert result.status == ProviderStatus.ACTIVE
        assert result.expires_at == datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
        method, url, _, _ = provider._session.requests[0]
        assert method == "GET"
        assert url.endswith("/custom_hostnames/cf-123")

    @pytest.mark.asyncio
    async def test_poll_pending(self):
        provider = edge_provider(
            FakeResponse(200, hostname_result("pending", "pending_validation"))
        )

        result = await provider.poll_status("cf-123")
        assert result.status == ProviderStatus.PENDING
        assert "pending_validation" in result.detail

    @pytest.mark.asyncio
    async def test_poll_hostname_active_ssl_pending(self):
        provider = edge_provider(
            FakeResponse(200, hostname_result("active", "pending_deployment"))
        )
        assert (await provider.poll_status("cf-123")).status == ProviderStatus.PENDING

    @pytest.mark.asyncio
    async def test_poll_validation_timed_out(self):
        body = hostname_result(
            "pending",
            "validation_timed_out",
            validation_errors=[{"message": "CAA record prevents issuance"}],
        )
        provider = edge_provider(FakeResponse(200, body))

        result = await provider.poll_status("cf-123")
        assert result.status == ProviderStatus.FAILED
        assert "CAA" in result.detail

    @pytest.mark.asyncio
    async def test_poll_blocked_hostname(self):
        provider = edge_provider(FakeResponse(200, hostname_result("blocked", "pending_validation")))
        assert (await provider.poll_status("cf-123")).status == ProviderStatus.FAILED

    @pytest.mark.asyncio
    async def test_poll_unknown_hostname_is_fatal(self):
        missing = {"success": False, "errors": [{"code": 1436, "message": "not found"}]}
        provider = edge_provider(FakeResponse(404, missing))

        with pytest.raises(ProvisioningFatalError):
            await provider.poll_status("cf-missing")

    @pytest.mark.asyncio
    async def test_renew_patches_ssl(self):
        provider = edge_provider(
            FakeResponse(200, hostname_result("active", "pending_validation"))
        )

        result = await provider.renew("cf-123")

        assert result.status == ProviderStatus.PENDING
        method, url, payload, _ = provider._session.requests[0]
        assert method == "PATCH"
        assert url.endswith("/custom_hostnames/cf-123")
        assert payload["ssl"]["method"] == "http"

    @pytest.mark.asyncio
    async def test_close(self):
        provider = edge_provider()
        session = provider._session
        await provider.close()
        assert session.closed is True
        assert provider._session is None


# ── ACME provider ────────────────────────────────────────────────────


def mock_process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock(return_value=returncode)
    return process


class TestAcmeProvider:
    def test_http01_command(self):
        provider = AcmeProvider(email="ops@example.com", webroot="/srv/acme")
        cmd = provider._certonly_cmd("app.example.org")

        assert cmd[:2] == ["certbot", "certonly"]
        assert "-d" in cmd and "app.example.org" in cmd
        assert "--webroot" in cmd and "/srv/acme" in cmd
        assert "--email" in cmd and "ops@example.com" in cmd
        assert cmd[-1] == "--keep-until-expiring"

    def test_dns01_command(self):
        provider = AcmeProvider(
            challenge="dns-01",
            dns_plugin="dns-cloudflare",
            dns_credentials="/etc/cf.ini",
        )
        cmd = provider._certonly_cmd("app.example.org", force_renewal=True)

        assert "--dns-cloudflare" in cmd
        assert "--dns-cloudflare-credentials" in cmd
        assert "--webroot" not in cmd
        assert "--register-unsafely-without-email" in cmd
        assert cmd[-1] == "--force-renewal"

    @pytest.mark.asyncio
    async def test_create_success(self):
        provider = AcmeProvider()
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=mock_process(0, b"Successfully received certificate")),
        ) as exec_mock:
            ref = await provider.create(make_domain())

        assert ref == "app.example.org"
        assert exec_mock.await_args.args[0] == "certbot"

    @pytest.mark.asyncio
    async def test_create_rejected_is_fatal(self):
        provider = AcmeProvider()
        stderr = b"Invalid response from http://app.example.org/.well-known: 404"
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=mock_process(1, stderr=stderr)),
        ):
            with pytest.raises(ProvisioningFatalError, match="404"):
                await provider.create(make_domain())

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        provider = AcmeProvider()
        stderr = b"Error: urn:ietf:params:acme:error:rateLimited: too many certificates"
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=mock_process(1, stderr=stderr)),
        ):
            with pytest.raises(ProvisioningTransientError):
                await provider.create(make_domain())

    @pytest.mark.asyncio
    async def test_missing_binary_is_transient(self):
        provider = AcmeProvider(certbot_bin="/nonexistent/certbot")
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError()),
        ):
            with pytest.raises(ProvisioningTransientError, match="not found"):
                await provider.create(make_domain())

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        provider = AcmeProvider(timeout=0.01)
        process = mock_process()

        async def hang():
            await asyncio.sleep(10)

        process.communicate = AsyncMock(side_effect=hang)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ProvisioningTransientError, match="timed out"):
                await provider.create(make_domain())

        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_poll_without_certificate_fails(self, tmp_path):
        provider = AcmeProvider(config_dir=str(tmp_path))
        result = await provider.poll_status("app.example.org")
        assert result.status == ProviderStatus.FAILED

    @pytest.mark.asyncio
    async def test_poll_reads_expiry(self, tmp_path):
        live = tmp_path / "live" / "app.example.org"
        live.mkdir(parents=True)
        (live / "fullchain.pem").write_text("cert")
        provider = AcmeProvider(config_dir=str(tmp_path))

        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=mock_process(0, b"notAfter=Jun  1 12:00:00 2026 GMT\n")),
        ):
            result = await provider.poll_status("app.example.org")

        assert result.status == ProviderStatus.ACTIVE
        assert result.expires_at == datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_renew_forces_renewal(self, tmp_path):
        live = tmp_path / "live" / "app.example.org"
        live.mkdir(parents=True)
        (live / "fullchain.pem").write_text("cert")
        provider = AcmeProvider(config_dir=str(tmp_path))

        processes = [
            mock_process(0, b"Renewing an existing certificate"),
            mock_process(0, b"notAfter=Aug 30 12:00:00 2026 GMT"),
        ]
        with patch(
            "asyncio.create_subprocess_exec", AsyncMock(side_effect=processes)
        ) as exec_mock:
            result = await provider.renew("app.example.org")

        assert "--force-renewal" in exec_mock.await_args_list[0].args
        assert result.status == ProviderStatus.ACTIVE
        assert result.expires_at == datetime(2026, 8, 30, 12, 0, tzinfo=timezone.utc)


# ── Provider selection ───────────────────────────────────────────────


class TestBuildProvider:
    def test_edge_saas(self):
        settings = Settings(
            ssl_provider="edge-saas",
            cloudflare_api_token="token",
            cloudflare_zone_id="zone",
            verification_method="txt",
        )
        provider = build_provider(settings)
        assert isinstance(provider, EdgeSaasProvider)
        assert provider.zone_id == "zone"
        assert provider.ssl_method == "txt"

    def test_acme(self):
        settings = Settings(
            ssl_provider="acme",
            acme_challenge="dns-01",
            acme_dns_credentials="/etc/cf.ini",
            acme_timeout_seconds=90,
        )
        provider = build_provider(settings)
        assert isinstance(provider, AcmeProvider)
        assert provider.challenge == "dns-01"
        assert provider.timeout == 90
        assert provider.email is None
