"""Custom domain verification and certificate provisioning."""

from .events import DomainEvent, DomainEventBus
from .models import CheckResult, CustomDomain, DomainStatus, SslStatus, VerificationMethod
from .policy import DomainPolicyGuard, normalize_hostname
from .registry import DomainRegistry
from .scheduler import ReconciliationScheduler, TickReport
from .ssl import AcmeProvider, CertificateProvider, EdgeSaasProvider, build_provider
from .verification import DnsResolver, DomainVerifier

__all__ = [
    "AcmeProvider",
    "CertificateProvider",
    "CheckResult",
    "CustomDomain",
    "DnsResolver",
    "DomainEvent",
    "DomainEventBus",
    "DomainPolicyGuard",
    "DomainRegistry",
    "DomainStatus",
    "DomainVerifier",
    "EdgeSaasProvider",
    "ReconciliationScheduler",
    "SslStatus",
    "TickReport",
    "VerificationMethod",
    "build_provider",
    "normalize_hostname",
]
