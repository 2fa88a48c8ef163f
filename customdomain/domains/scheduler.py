"""
Reconciliation scheduler: the periodic driver that moves custom domains
through verification and certificate provisioning.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from .errors import (
    DomainNotFound,
    DomainStateError,
    ProvisioningFatalError,
    ProvisioningTransientError,
)
from .events import DomainEventBus
from .models import CheckResult, CustomDomain, DomainStatus, SslStatus
from .registry import DomainRegistry
from .ssl import CertificateProvider, PollResult, ProviderStatus
from .verification import DomainVerifier

logger = logging.getLogger("customdomain.domains.scheduler")

Handler = Callable[[str, "TickReport"], Awaitable[None]]


@dataclass
class TickReport:
    """What one reconciliation tick did."""

    started_at: datetime
    expired: int = 0
    checked: int = 0
    verified: int = 0
    provisioned: int = 0
    polled: int = 0
    activated: int = 0
    renewed: int = 0
    ssl_failed: int = 0
    transient_errors: int = 0
    errors: int = 0
    skipped: int = 0
    deadline_exceeded: bool = False
    duration: float = 0.0
    steps: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


class ReconciliationScheduler:
    """
    Drives every due domain one step forward per tick.

    Step order within a tick is fixed: expire, verify, provision, poll,
    renew. Each per-domain handler runs under the domain's registry lease,
    re-reads the record, re-checks its precondition and writes through
    compare-and-set, so re-running a step is always a no-op.
    """

    def __init__(
        self,
        registry: DomainRegistry,
        verifier: DomainVerifier,
        provider: CertificateProvider,
        events: DomainEventBus,
        interval: float = 60.0,
        soft_deadline: float = 45.0,
        max_workers: int = 10,
        lease_ttl: float = 300.0,
        task_timeout: float = 150.0,
        enable_auto_renewal: bool = False,
        renewal_window_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.verifier = verifier
        self.provider = provider
        self.events = events
        self.interval = interval
        self.soft_deadline = soft_deadline
        self.max_workers = max_workers
        self.lease_ttl = lease_ttl
        self.task_timeout = task_timeout
        self.enable_auto_renewal = enable_auto_renewal
        self.renewal_window = timedelta(days=renewal_window_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self.last_report: Optional[TickReport] = None

    def _now(self) -> datetime:
        return self._clock()

    # ── Loop control ─────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic loop on the running event loop."""
        if self._task and not self._task.done():
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Reconciliation scheduler started (every {self.interval}s)")

    async def stop(self) -> None:
        """Stop the loop, letting an in-progress tick finish."""
        if not self._task:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Reconciliation scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stopping.is_set():
            started = loop.time()
            try:
                await self.tick()
            except Exception:
                logger.exception("Reconciliation tick failed")
            remaining = max(0.0, self.interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass

    # ── Tick ─────────────────────────────────────────────────────────

    async def tick(self) -> TickReport:
        """Run one reconciliation pass over all due domains."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.soft_deadline
        report = TickReport(started_at=self._now())

        # Expiry strictly precedes verification
        await self._expire_overdue(report)
        report.steps.append("expire")

        await self._dispatch(
            "verify",
            await self.registry.find_due(self._awaits_verification),
            self._verify_one, report, deadline,
        )
        await self._dispatch(
            "provision",
            await self.registry.find_due(self._awaits_provisioning),
            self._provision_one, report, deadline,
        )
        await self._dispatch(
            "poll",
            await self.registry.find_due(self._awaits_poll),
            self._poll_one, report, deadline,
        )
        if self.enable_auto_renewal:
            await self._dispatch(
                "renew",
                await self.registry.find_due(self._awaits_renewal),
                self._renew_one, report, deadline,
            )

        report.duration = loop.time() - started
        self.last_report = report
        logger.info(
            f"Tick done in {report.duration:.2f}s: expired={report.expired} "
            f"checked={report.checked} verified={report.verified} "
            f"provisioned={report.provisioned} polled={report.polled} "
            f"activated={report.activated} renewed={report.renewed} "
            f"errors={report.errors} skipped={report.skipped}"
        )
        return report

    async def _dispatch(
        self,
        step: str,
        domains: List[CustomDomain],
        handler: Handler,
        report: TickReport,
        deadline: float,
    ) -> None:
        """Run handler for each domain on a bounded worker pool."""
        report.steps.append(step)
        if not domains:
            return

        loop = asyncio.get_running_loop()
        semaphore = asyncio.Semaphore(self.max_workers)

        async def run(domain: CustomDomain) -> None:
            async with semaphore:
                if loop.time() > deadline:
                    # Soft deadline: finish in-flight work, start nothing new
                    report.deadline_exceeded = True
                    report.skipped += 1
                    return
                try:
                    async with self.registry.lease(domain.id, self.lease_ttl) as acquired:
                        if not acquired:
                            logger.debug(f"{step}: {domain.hostname} is leased elsewhere")
                            report.skipped += 1
                            return
                        await asyncio.wait_for(
                            handler(domain.id, report), timeout=self.task_timeout
                        )
                except asyncio.TimeoutError:
                    report.errors += 1
                    logger.warning(
                        f"{step}: {domain.hostname} timed out after {self.task_timeout}s"
                    )
                except Exception:
                    report.errors += 1
                    logger.exception(f"{step}: unexpected error for {domain.hostname}")

        await asyncio.gather(*(run(d) for d in domains))
        if report.deadline_exceeded:
            logger.warning(f"{step}: tick soft deadline passed, deferring remaining work")

    async def _transition(
        self,
        domain: CustomDomain,
        mutation: Callable[[CustomDomain], None],
        detail: Optional[str] = None,
    ) -> Optional[CustomDomain]:
        """Write mutation if domain is unchanged since read; emit events."""
        updated = await self.registry.compare_and_set(domain.id, domain.version, mutation)
        if updated is None:
            logger.info(f"{domain.hostname} changed concurrently, skipping update")
            return None
        self.events.record_changes(domain, updated, at=self._now(), detail=detail)
        return updated

    # ── Due predicates ───────────────────────────────────────────────

    def _awaits_verification(self, domain: CustomDomain) -> bool:
        return domain.status == DomainStatus.PENDING_VERIFICATION

    def _awaits_provisioning(self, domain: CustomDomain) -> bool:
        return (
            domain.status == DomainStatus.VERIFIED
            and domain.ssl_status == SslStatus.NOT_REQUESTED
        )

    def _awaits_poll(self, domain: CustomDomain) -> bool:
        return (
            domain.status == DomainStatus.VERIFIED
            and domain.ssl_status in (SslStatus.PENDING, SslStatus.PROVISIONING)
        )

    def _in_renewal_window(self, domain: CustomDomain) -> bool:
        return (
            domain.ssl_expires_at is not None
            and domain.ssl_expires_at - self._now() <= self.renewal_window
        )

    def _awaits_renewal(self, domain: CustomDomain) -> bool:
        if domain.status != DomainStatus.VERIFIED:
            return False
        if domain.ssl_status == SslStatus.EXPIRING:
            return True
        return domain.ssl_status == SslStatus.ACTIVE and self._in_renewal_window(domain)

    # ── Step 1: expire ───────────────────────────────────────────────

    async def _expire_overdue(self, report: TickReport) -> None:
        now = self._now()
        overdue = await self.registry.find_due(
            lambda d: d.status == DomainStatus.PENDING_VERIFICATION
            and now > d.verification_deadline
        )
        for domain in overdue:
            try:
                if await self._expire(domain):
                    report.expired += 1
            except Exception:
                report.errors += 1
                logger.exception(f"expire: unexpected error for {domain.hostname}")

    async def _expire(self, domain: CustomDomain) -> Optional[CustomDomain]:
        def mutation(d: CustomDomain) -> None:
            d.status = DomainStatus.EXPIRED

        return await self._transition(
            domain, mutation, detail="verification deadline passed"
        )

    # ── Step 2: verify ───────────────────────────────────────────────

    async def _verify(
        self, domain: CustomDomain
    ) -> Tuple[CheckResult, Optional[CustomDomain]]:
        result = await self.verifier.check(domain)
        now = self._now()
        late = now > domain.verification_deadline
        if result == CheckResult.MATCHED and late:
            logger.info(f"Ignoring late DNS match for {domain.hostname}")

        def mutation(d: CustomDomain) -> None:
            d.last_checked_at = now
            d.last_check_result = result
            if result == CheckResult.MATCHED and not late:
                d.status = DomainStatus.VERIFIED
                d.verified_at = now

        updated = await self._transition(domain, mutation, detail=f"dns {result.value}")
        return result, updated

    async def _verify_one(self, domain_id: str, report: TickReport) -> None:
        domain = await self.registry.get(domain_id)
        if domain is None or not self._awaits_verification(domain):
            return
        if self._now() > domain.verification_deadline:
            return
        result, updated = await self._verify(domain)
        report.checked += 1
        if updated and updated.status == DomainStatus.VERIFIED:
            report.verified += 1

    # ── Step 3: provision ────────────────────────────────────────────

    async def _fail_ssl(self, domain: CustomDomain, reason: str) -> Optional[CustomDomain]:
        def mutation(d: CustomDomain) -> None:
            d.set_ssl_status(SslStatus.FAILED)
            d.failure_reason = reason

        logger.error(f"Certificate failed for {domain.hostname}: {reason}")
        return await self._transition(domain, mutation, detail=reason)

    async def _provision_one(self, domain_id: str, report: TickReport) -> None:
        domain = await self.registry.get(domain_id)
        if domain is None or not self._awaits_provisioning(domain):
            return

        try:
            provider_ref = await self.provider.create(domain)
        except ProvisioningTransientError as e:
            report.transient_errors += 1
            logger.warning(f"provision: transient failure for {domain.hostname}: {e}")
            return
        except ProvisioningFatalError as e:
            if await self._fail_ssl(domain, str(e)):
                report.ssl_failed += 1
            return

        def mutation(d: CustomDomain) -> None:
            d.set_ssl_status(SslStatus.PENDING)
            d.provider_ref = provider_ref
            d.failure_reason = None

        if await self._transition(domain, mutation, detail=f"{self.provider.name} {provider_ref}"):
            report.provisioned += 1

    # ── Step 4: poll ─────────────────────────────────────────────────

    async def _poll_one(self, domain_id: str, report: TickReport) -> None:
        domain = await self.registry.get(domain_id)
        if domain is None or not self._awaits_poll(domain):
            return
        if not domain.provider_ref:
            if await self._fail_ssl(domain, "missing provider reference"):
                report.ssl_failed += 1
            return

        try:
            result = await self.provider.poll_status(domain.provider_ref)
        except ProvisioningTransientError as e:
            report.transient_errors += 1
            logger.warning(f"poll: transient failure for {domain.hostname}: {e}")
            return
        except ProvisioningFatalError as e:
            if await self._fail_ssl(domain, str(e)):
                report.ssl_failed += 1
            return

        report.polled += 1
        if result.status == ProviderStatus.FAILED:
            if await self._fail_ssl(domain, result.detail or "provider reported failure"):
                report.ssl_failed += 1
            return

        if result.status == ProviderStatus.ACTIVE:
            def activate(d: CustomDomain) -> None:
                d.set_ssl_status(SslStatus.ACTIVE)
                d.ssl_expires_at = result.expires_at
                d.failure_reason = None

            if await self._transition(domain, activate, detail=result.detail):
                report.activated += 1
            return

        if domain.ssl_status == SslStatus.PENDING:
            def in_progress(d: CustomDomain) -> None:
                d.set_ssl_status(SslStatus.PROVISIONING)

            await self._transition(domain, in_progress, detail=result.detail)

    # ── Step 5: renew ────────────────────────────────────────────────

    async def _renew_one(self, domain_id: str, report: TickReport) -> None:
        domain = await self.registry.get(domain_id)
        if domain is None or not self._awaits_renewal(domain):
            return
        if not domain.provider_ref:
            if await self._fail_ssl(domain, "missing provider reference"):
                report.ssl_failed += 1
            return

        try:
            if domain.ssl_status == SslStatus.ACTIVE:
                # The provider may already have renewed on its own
                current = await self.provider.poll_status(domain.provider_ref)
                if current.status == ProviderStatus.ACTIVE and not self._expiry_due(current):
                    await self._refresh_expiry(domain, current)
                    return

                def start_renewal(d: CustomDomain) -> None:
                    d.set_ssl_status(SslStatus.EXPIRING)

                domain = await self._transition(domain, start_renewal, detail="renewal started")
                if domain is None:
                    return
                try:
                    result = await self.provider.renew(domain.provider_ref)
                except ProvisioningTransientError as e:
                    report.transient_errors += 1
                    logger.warning(f"renew: transient failure for {domain.hostname}: {e}")
                    await self._resume_active(domain, "renewal deferred")
                    return
            else:
                # Renewal started on an earlier tick
                result = await self.provider.poll_status(domain.provider_ref)
                if result.status == ProviderStatus.ACTIVE and self._expiry_due(result):
                    # The old certificate is still in place; renew again next tick
                    await self._resume_active(domain, "renewal restarted")
                    return
        except ProvisioningTransientError as e:
            report.transient_errors += 1
            logger.warning(f"renew: transient failure for {domain.hostname}: {e}")
            return
        except ProvisioningFatalError as e:
            if await self._fail_ssl(domain, str(e)):
                report.ssl_failed += 1
            return

        await self._finish_renewal(domain, result, report)

    def _expiry_due(self, result: PollResult) -> bool:
        return (
            result.expires_at is not None
            and result.expires_at - self._now() <= self.renewal_window
        )

    async def _resume_active(self, domain: CustomDomain, detail: str) -> None:
        def mutation(d: CustomDomain) -> None:
            d.set_ssl_status(SslStatus.ACTIVE)

        await self._transition(domain, mutation, detail=detail)

    async def _refresh_expiry(self, domain: CustomDomain, result: PollResult) -> None:
        if result.expires_at == domain.ssl_expires_at:
            return

        def mutation(d: CustomDomain) -> None:
            d.ssl_expires_at = result.expires_at

        await self._transition(domain, mutation)

    async def _finish_renewal(
        self, domain: CustomDomain, result: PollResult, report: TickReport
    ) -> None:
        if result.status == ProviderStatus.FAILED:
            if await self._fail_ssl(domain, result.detail or "renewal failed"):
                report.ssl_failed += 1
            return

        if result.status == ProviderStatus.ACTIVE and not self._expiry_due(result):
            def renewed(d: CustomDomain) -> None:
                d.set_ssl_status(SslStatus.ACTIVE)
                d.ssl_expires_at = result.expires_at
                d.failure_reason = None

            if await self._transition(domain, renewed, detail="renewal complete"):
                report.renewed += 1
            return

        logger.info(f"Renewal for {domain.hostname} still in progress ({result.detail})")

    # ── Manual triggers ──────────────────────────────────────────────

    async def _require(self, domain_id: str) -> CustomDomain:
        domain = await self.registry.get(domain_id)
        if domain is None:
            raise DomainNotFound(f"Domain {domain_id} not found")
        return domain

    async def verify_now(self, domain_id: str) -> Tuple[CheckResult, CustomDomain]:
        """
        Run a verification check immediately (owner clicked "Verify").

        Follows the same lease, deadline and transition rules as a tick.
        """
        domain = await self._require(domain_id)
        if domain.status != DomainStatus.PENDING_VERIFICATION:
            raise DomainStateError(
                f"{domain.hostname} is {domain.status.value}, not pending verification"
            )

        async with self.registry.lease(domain_id, self.lease_ttl) as acquired:
            if not acquired:
                raise DomainStateError(f"A check for {domain.hostname} is already running")
            domain = await self._require(domain_id)
            if domain.status != DomainStatus.PENDING_VERIFICATION:
                return CheckResult.INCONCLUSIVE, domain
            if self._now() > domain.verification_deadline:
                expired = await self._expire(domain)
                return CheckResult.INCONCLUSIVE, expired or await self._require(domain_id)
            result, updated = await self._verify(domain)

        return result, updated or await self._require(domain_id)

    async def reprovision(self, domain_id: str) -> CustomDomain:
        """Re-arm certificate provisioning for a verified domain whose
        certificate failed. The next tick calls the provider again."""
        domain = await self._require(domain_id)
        if domain.status != DomainStatus.VERIFIED or domain.ssl_status != SslStatus.FAILED:
            raise DomainStateError(
                f"{domain.hostname} is {domain.status.value}/{domain.ssl_status.value}; "
                "only verified domains with a failed certificate can be reprovisioned"
            )

        def mutation(d: CustomDomain) -> None:
            d.set_ssl_status(SslStatus.NOT_REQUESTED)
            d.provider_ref = None
            d.ssl_expires_at = None
            d.failure_reason = None

        updated = await self._transition(domain, mutation, detail="reprovision requested")
        if updated is None:
            raise DomainStateError(f"{domain.hostname} changed concurrently, retry")
        return updated

    async def reject(self, domain_id: str, reason: str) -> CustomDomain:
        """Terminally reject a domain that is still pending verification."""
        domain = await self._require(domain_id)
        if domain.status != DomainStatus.PENDING_VERIFICATION:
            raise DomainStateError(
                f"{domain.hostname} is {domain.status.value}, not pending verification"
            )

        def mutation(d: CustomDomain) -> None:
            d.status = DomainStatus.FAILED
            d.failure_reason = reason

        updated = await self._transition(domain, mutation, detail=reason)
        if updated is None:
            raise DomainStateError(f"{domain.hostname} changed concurrently, retry")
        return updated
