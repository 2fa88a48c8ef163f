"""
DNS verification for custom domains.
"""

import logging
from typing import List, Optional, Sequence, Set

import dns.asyncresolver
import dns.exception
import dns.resolver

from .models import CheckResult, CustomDomain, VerificationMethod

logger = logging.getLogger("customdomain.domains.verification")


class DnsLookupError(Exception):
    """Base class for resolution failures."""
    pass


class RecordNotFound(DnsLookupError):
    """NXDOMAIN, or the name exists without a record of the requested type."""
    pass


class ResolversUnavailable(DnsLookupError):
    """Every configured resolver timed out or failed."""
    pass


class DnsResolver:
    """
    Resolves records against an explicit list of nameservers.

    The first nameserver is the primary; the rest are only tried when
    the previous one times out or fails (SERVFAIL, refused, unreachable).
    """

    def __init__(
        self,
        nameservers: Sequence[str] = ("8.8.8.8", "1.1.1.1"),
        timeout: float = 5.0,
    ):
        if not nameservers:
            raise ValueError("At least one nameserver is required")
        self.nameservers = list(nameservers)
        self.timeout = timeout

    def _get_resolver(self, nameserver: str) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = [nameserver]
        resolver.timeout = self.timeout
        resolver.lifetime = self.timeout
        return resolver

    @staticmethod
    def _rdata_text(rdata, record_type: str) -> str:
        if record_type == "CNAME":
            return str(rdata.target)
        if record_type == "TXT":
            # TXT records may be split into multiple strings
            return "".join(
                s.decode() if isinstance(s, bytes) else s
                for s in rdata.strings
            )
        return rdata.to_text()

    async def resolve(self, name: str, record_type: str) -> List[str]:
        """
        Return the record values for name.

        Raises RecordNotFound on a definitive negative answer and
        ResolversUnavailable if no resolver produced an answer.
        """
        last_error: Optional[Exception] = None
        for nameserver in self.nameservers:
            resolver = self._get_resolver(nameserver)
            try:
                answers = await resolver.resolve(name, record_type)
            except dns.resolver.NXDOMAIN as e:
                raise RecordNotFound(f"{name} does not exist (NXDOMAIN)") from e
            except dns.resolver.NoAnswer as e:
                raise RecordNotFound(f"No {record_type} records at {name}") from e
            except (dns.exception.Timeout, dns.resolver.NoNameservers) as e:
                logger.warning(
                    f"Resolver {nameserver} failed for {name} {record_type}: {e}"
                )
                last_error = e
                continue
            except dns.exception.DNSException as e:
                # Malformed query name and the like; no resolver can answer it
                raise DnsLookupError(f"Cannot resolve {name} {record_type}: {e}") from e
            return [self._rdata_text(rdata, record_type) for rdata in answers]

        raise ResolversUnavailable(
            f"All resolvers failed for {name} {record_type}: {last_error}"
        )


class DomainVerifier:
    """Checks whether a domain's ownership challenge is published in DNS."""

    def __init__(self, resolver: DnsResolver, cname_target: str):
        self.resolver = resolver
        self.cname_target = cname_target.lower().rstrip(".")
        self._in_flight: Set[str] = set()

    async def check(self, domain: CustomDomain) -> CheckResult:
        """
        Run one verification check.

        Never raises for DNS failures: anything short of a definitive
        answer is INCONCLUSIVE, since the owner may still be propagating.
        """
        if domain.id in self._in_flight:
            logger.debug(f"Check already in flight for {domain.hostname}")
            return CheckResult.INCONCLUSIVE

        self._in_flight.add(domain.id)
        try:
            if domain.verification_method == VerificationMethod.CNAME:
                result, message = await self.verify_cname(domain)
            else:
                result, message = await self.verify_txt(domain)
        finally:
            self._in_flight.discard(domain.id)

        logger.info(f"Verification {result.value} for {domain.hostname}: {message}")
        return result

    async def verify_cname(self, domain: CustomDomain):
        """Verify that the record name has a CNAME to the platform target."""
        name = domain.verification_record_name
        try:
            targets = await self.resolver.resolve(name, "CNAME")
        except DnsLookupError as e:
            return CheckResult.INCONCLUSIVE, str(e)

        normalized = [t.lower().rstrip(".") for t in targets]
        if self.cname_target in normalized:
            return CheckResult.MATCHED, f"CNAME verified: {name} -> {self.cname_target}"
        # CNAME exists but points elsewhere
        return CheckResult.MISMATCHED, (
            f"CNAME exists but points to {', '.join(normalized)}, "
            f"expected {self.cname_target}"
        )

    async def verify_txt(self, domain: CustomDomain):
        """Verify the TXT record carries the expected challenge value."""
        name = domain.verification_record_name
        expected = domain.verification_record_value
        try:
            values = await self.resolver.resolve(name, "TXT")
        except DnsLookupError as e:
            return CheckResult.INCONCLUSIVE, str(e)

        if expected in values:
            return CheckResult.MATCHED, f"TXT record verified at {name}"
        # Records exist but none match
        return CheckResult.MISMATCHED, (
            f"TXT records found at {name} but none match. Found: {values}"
        )
