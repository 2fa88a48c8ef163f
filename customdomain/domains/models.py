"""
Custom domain data model.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class VerificationMethod(str, Enum):
    CNAME = "cname"
    TXT = "txt"


class DomainStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    EXPIRED = "expired"
    FAILED = "failed"


class SslStatus(str, Enum):
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    EXPIRING = "expiring"
    FAILED = "failed"


class CheckResult(str, Enum):
    """Outcome of a single DNS verification check."""

    MATCHED = "matched"
    MISMATCHED = "mismatched"
    INCONCLUSIVE = "inconclusive"


# Domains that count against a team's quota
NON_TERMINAL_STATUSES = frozenset(
    {DomainStatus.PENDING_VERIFICATION, DomainStatus.VERIFIED}
)

# Certificate states in which the edge may serve the hostname
SERVING_SSL_STATUSES = frozenset({SslStatus.ACTIVE, SslStatus.EXPIRING})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class CustomDomain:
    """A tenant-owned hostname bound to the platform."""

    team_id: str
    hostname: str
    verification_deadline: datetime
    verification_method: VerificationMethod = VerificationMethod.CNAME
    verification_record_name: str = ""
    verification_record_value: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    verification_token: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    status: DomainStatus = DomainStatus.PENDING_VERIFICATION
    ssl_status: SslStatus = SslStatus.NOT_REQUESTED
    provider_ref: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    verified_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    last_check_result: Optional[CheckResult] = None
    ssl_expires_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    version: int = 0

    @property
    def is_non_terminal(self) -> bool:
        return self.status in NON_TERMINAL_STATUSES

    @property
    def is_serving(self) -> bool:
        """True when the edge may route traffic for this hostname."""
        return (
            self.status == DomainStatus.VERIFIED
            and self.ssl_status in SERVING_SSL_STATUSES
        )

    def set_ssl_status(self, ssl_status: SslStatus) -> None:
        """Move the certificate state; only verified domains may advance."""
        ssl_status = SslStatus(ssl_status)
        if (
            ssl_status != SslStatus.NOT_REQUESTED
            and self.status != DomainStatus.VERIFIED
        ):
            raise ValueError(
                f"Cannot set ssl_status={ssl_status.value} on {self.hostname}: "
                f"domain is {self.status.value}"
            )
        self.ssl_status = ssl_status

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "team_id": self.team_id,
            "hostname": self.hostname,
            "verification_method": self.verification_method.value,
            "verification_token": self.verification_token,
            "verification_record_name": self.verification_record_name,
            "verification_record_value": self.verification_record_value,
            "status": self.status.value,
            "ssl_status": self.ssl_status.value,
            "provider_ref": self.provider_ref,
            "created_at": self.created_at.isoformat(),
            "verified_at": _format_dt(self.verified_at),
            "verification_deadline": self.verification_deadline.isoformat(),
            "last_checked_at": _format_dt(self.last_checked_at),
            "last_check_result": self.last_check_result.value if self.last_check_result else None,
            "ssl_expires_at": _format_dt(self.ssl_expires_at),
            "failure_reason": self.failure_reason,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CustomDomain":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            team_id=data["team_id"],
            hostname=data["hostname"],
            verification_method=VerificationMethod(data.get("verification_method", "cname")),
            verification_token=data.get("verification_token", ""),
            verification_record_name=data.get("verification_record_name", ""),
            verification_record_value=data.get("verification_record_value", ""),
            status=DomainStatus(data.get("status", DomainStatus.PENDING_VERIFICATION.value)),
            ssl_status=SslStatus(data.get("ssl_status", SslStatus.NOT_REQUESTED.value)),
            provider_ref=data.get("provider_ref"),
            created_at=_parse_dt(data.get("created_at")) or _utcnow(),
            verified_at=_parse_dt(data.get("verified_at")),
            verification_deadline=_parse_dt(data["verification_deadline"]),
            last_checked_at=_parse_dt(data.get("last_checked_at")),
            last_check_result=CheckResult(data["last_check_result"]) if data.get("last_check_result") else None,
            ssl_expires_at=_parse_dt(data.get("ssl_expires_at")),
            failure_reason=data.get("failure_reason"),
            version=data.get("version", 0),
        )

    def to_api_response(self) -> dict:
        """Convert to API response, hiding the challenge once verified."""
        resp = {
            "id": self.id,
            "team_id": self.team_id,
            "hostname": self.hostname,
            "status": self.status.value,
            "ssl_status": self.ssl_status.value,
            "verification_method": self.verification_method.value,
            "created_at": self.created_at.isoformat(),
            "verified_at": _format_dt(self.verified_at),
            "verification_deadline": self.verification_deadline.isoformat(),
            "last_checked_at": _format_dt(self.last_checked_at),
            "last_check_result": self.last_check_result.value if self.last_check_result else None,
            "ssl_expires_at": _format_dt(self.ssl_expires_at),
            "failure_reason": self.failure_reason,
        }
        if self.status == DomainStatus.PENDING_VERIFICATION:
            resp["verification_record_name"] = self.verification_record_name
            resp["verification_record_value"] = self.verification_record_value
        return resp
