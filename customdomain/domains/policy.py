"""
Admission policy for new custom domains: hostname normalization,
blocklist and per-team quota.
"""

import logging
import re
import string
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from .errors import BlocklistedHostname, InvalidHostname, ValidationError
from .events import DomainEventBus
from .models import CustomDomain, VerificationMethod
from .registry import DomainRegistry

logger = logging.getLogger("customdomain.domains.policy")

MAX_HOSTNAME_LENGTH = 253

# RFC 1123 label: alphanumerics and inner hyphens, 1-63 chars
_LABEL_RE = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")


def normalize_hostname(raw: str) -> str:
    """Lowercase, trim and strip trailing dots. Does not validate."""
    return raw.lower().lstrip().rstrip("." + string.whitespace)


def validate_hostname(hostname: str) -> None:
    """Raise InvalidHostname unless hostname is a normalized FQDN."""
    if not hostname:
        raise InvalidHostname("Hostname is empty")
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise InvalidHostname(
            f"Hostname exceeds {MAX_HOSTNAME_LENGTH} characters"
        )
    labels = hostname.split(".")
    if len(labels) < 2:
        raise InvalidHostname(f"{hostname} is not a fully qualified domain")
    for label in labels:
        if not _LABEL_RE.fullmatch(label):
            raise InvalidHostname(f"Invalid label {label!r} in {hostname}")
    # Rules out IPv4 literals
    if labels[-1].isdigit():
        raise InvalidHostname(f"{hostname} has a numeric top-level label")


def is_blocklisted(hostname: str, blocklist: Iterable[str]) -> bool:
    """True if hostname equals or sits under any blocklisted suffix."""
    for suffix in blocklist:
        suffix = suffix.lower().strip(".")
        if suffix and (hostname == suffix or hostname.endswith(f".{suffix}")):
            return True
    return False


class DomainPolicyGuard:
    """Admits custom domain creation requests into the registry."""

    def __init__(
        self,
        registry: DomainRegistry,
        events: DomainEventBus,
        cname_target: str,
        max_domains_per_team: int = 3,
        verification_timeout_hours: int = 72,
        default_method: str = "cname",
        txt_record_prefix: str = "_platform-verification",
        txt_value_prefix: str = "platform-verification",
        blocklist: Optional[Iterable[str]] = None,
        enable_blocklist: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.events = events
        self.cname_target = cname_target.lower().rstrip(".")
        self.max_domains_per_team = max_domains_per_team
        self.verification_timeout = timedelta(hours=verification_timeout_hours)
        self.default_method = VerificationMethod(default_method)
        self.txt_record_prefix = txt_record_prefix.strip(".")
        self.txt_value_prefix = txt_value_prefix
        self.blocklist = list(blocklist or [])
        self.enable_blocklist = enable_blocklist
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record_for(self, method: VerificationMethod, hostname: str, token: str):
        """Return (record_name, record_value) the owner must publish."""
        if method == VerificationMethod.CNAME:
            return hostname, self.cname_target
        return (
            f"{self.txt_record_prefix}.{hostname}",
            f"{self.txt_value_prefix}={token}",
        )

    async def admit(
        self,
        team_id: str,
        raw_hostname: str,
        method: Optional[str] = None,
    ) -> CustomDomain:
        """
        Validate a creation request and insert the new domain.

        Raises a ValidationError subclass when the hostname is malformed,
        blocklisted, already registered, or the team is over quota.
        """
        hostname = normalize_hostname(raw_hostname)
        validate_hostname(hostname)

        try:
            verification_method = (
                VerificationMethod(method.lower()) if method else self.default_method
            )
        except ValueError:
            raise ValidationError(
                "Method must be 'cname' or 'txt'", code="invalid_method"
            )

        if self.enable_blocklist and is_blocklisted(hostname, self.blocklist):
            logger.info(f"Rejected blocklisted hostname {hostname} for team {team_id}")
            raise BlocklistedHostname(f"{hostname} cannot be registered")

        now = self._clock()
        domain = CustomDomain(
            team_id=team_id,
            hostname=hostname,
            verification_method=verification_method,
            created_at=now,
            verification_deadline=now + self.verification_timeout,
        )
        domain.verification_record_name, domain.verification_record_value = (
            self.record_for(verification_method, hostname, domain.verification_token)
        )
        if len(domain.verification_record_name) > MAX_HOSTNAME_LENGTH:
            raise InvalidHostname(
                f"{hostname} is too long for a {verification_method.value.upper()} "
                f"challenge at {domain.verification_record_name}"
            )

        await self.registry.insert_if_quota_allows(domain, self.max_domains_per_team)
        self.events.record_created(domain, at=now)
        return domain

    def instructions(self, domain: CustomDomain) -> dict:
        """Return human-readable DNS instructions for domain verification."""
        record_type = domain.verification_method.value.upper()
        if domain.verification_method == VerificationMethod.CNAME:
            text = (
                f"Add a CNAME record for {domain.verification_record_name} "
                f"pointing to {domain.verification_record_value}"
            )
        else:
            text = (
                f"Add a TXT record at {domain.verification_record_name} "
                f"with value: {domain.verification_record_value}"
            )
        return {
            "method": domain.verification_method.value,
            "instructions": text,
            "record_type": record_type,
            "record_name": domain.verification_record_name,
            "record_value": domain.verification_record_value,
            "deadline": domain.verification_deadline.isoformat(),
        }
