"""
Pytest configuration for custom domain tests.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment variables
os.environ["CUSTOMDOMAIN_DEBUG"] = "true"
os.environ["CUSTOMDOMAIN_REDIS_URL"] = ""
os.environ["CUSTOMDOMAIN_RUN_SCHEDULER"] = "false"

from customdomain.domains.errors import ProvisioningFatalError  # noqa: E402
from customdomain.domains.events import DomainEventBus  # noqa: E402
from customdomain.domains.models import CheckResult  # noqa: E402
from customdomain.domains.policy import DomainPolicyGuard  # noqa: E402
from customdomain.domains.registry import DomainRegistry  # noqa: E402
from customdomain.domains.ssl import CertificateProvider, PollResult, ProviderStatus  # noqa: E402

CNAME_TARGET = "verify.app.example.com"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeVerifier:
    """Returns scripted check results per hostname."""

    def __init__(self, default: CheckResult = CheckResult.INCONCLUSIVE):
        self.default = default
        self.results: Dict[str, CheckResult] = {}
        self.calls: List[str] = []

    async def check(self, domain):
        self.calls.append(domain.hostname)
        return self.results.get(domain.hostname, self.default)


class FakeProvider(CertificateProvider):
    """Scripted certificate provider recording every call."""

    name = "fake"

    def __init__(self):
        self.created: List[str] = []
        self.polled: List[str] = []
        self.renewed: List[str] = []
        self.create_error: Optional[Exception] = None
        self.poll_result = PollResult(ProviderStatus.PENDING, detail="initializing")
        self.poll_error: Optional[Exception] = None
        self.renew_result: Optional[PollResult] = None
        self.renew_error: Optional[Exception] = None

    async def create(self, domain):
        self.created.append(domain.hostname)
        if self.create_error:
            raise self.create_error
        return f"ref-{domain.hostname}"

    async def poll_status(self, provider_ref):
        self.polled.append(provider_ref)
        if self.poll_error:
            raise self.poll_error
        return self.poll_result

    async def renew(self, provider_ref):
        self.renewed.append(provider_ref)
        if self.renew_error:
            raise self.renew_error
        if self.renew_result is None:
            raise ProvisioningFatalError("no renewal scripted")
        return self.renew_result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def domain_registry():
    """In-memory domain registry (no Redis)."""
    reg = DomainRegistry(redis_url="")
    reg._use_redis = False
    return reg


@pytest_asyncio.fixture
async def redis_registry():
    """Domain registry on an isolated fake Redis server."""
    reg = DomainRegistry(redis_url="redis://localhost:6379/15", key_prefix="test:")
    reg._redis = fakeredis.aioredis.FakeRedis(
        server=fakeredis.FakeServer(), decode_responses=True
    )
    yield reg
    await reg.close()


@pytest.fixture
def events():
    return DomainEventBus()


@pytest.fixture
def guard(domain_registry, events, clock):
    return DomainPolicyGuard(
        registry=domain_registry,
        events=events,
        cname_target=CNAME_TARGET,
        max_domains_per_team=3,
        verification_timeout_hours=48,
        default_method="cname",
        blocklist=["platform.example.net"],
        enable_blocklist=True,
        clock=clock,
    )


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def provider():
    return FakeProvider()
