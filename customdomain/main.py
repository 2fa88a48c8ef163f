"""
Custom domain service entry point.

Run with: uvicorn customdomain.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .api.domains import router as domains_router
from .config import Settings, get_settings
from .domains.events import DomainEventBus
from .domains.policy import DomainPolicyGuard
from .domains.registry import DomainRegistry
from .domains.scheduler import ReconciliationScheduler
from .domains.ssl import CertificateProvider, build_provider
from .domains.verification import DnsResolver, DomainVerifier

logger = logging.getLogger("customdomain.main")


def build_components(
    settings: Settings,
    provider: Optional[CertificateProvider] = None,
    verifier: Optional[DomainVerifier] = None,
) -> dict:
    """Wire the registry, guard, verifier, provider and scheduler."""
    registry = DomainRegistry(
        redis_url=settings.redis_url,
        key_prefix=settings.key_prefix,
    )
    events = DomainEventBus()
    guard = DomainPolicyGuard(
        registry=registry,
        events=events,
        cname_target=settings.effective_cname_target,
        max_domains_per_team=settings.max_domains_per_team,
        verification_timeout_hours=settings.verification_timeout_hours,
        default_method=settings.verification_method,
        txt_record_prefix=settings.txt_record_prefix,
        txt_value_prefix=settings.txt_value_prefix,
        blocklist=settings.effective_blocklist,
        enable_blocklist=settings.enable_domain_blocklist,
    )
    if verifier is None:
        verifier = DomainVerifier(
            resolver=DnsResolver(settings.dns_resolvers, settings.dns_timeout_seconds),
            cname_target=settings.effective_cname_target,
        )
    if provider is None:
        provider = build_provider(settings)

    provider_timeout = (
        settings.acme_timeout_seconds
        if settings.ssl_provider == "acme"
        else settings.provider_timeout_seconds
    )
    # A renewal can make two provider calls back to back
    task_timeout = max(
        settings.dns_timeout_seconds * len(settings.dns_resolvers),
        2 * provider_timeout,
    ) + 5.0

    scheduler = ReconciliationScheduler(
        registry=registry,
        verifier=verifier,
        provider=provider,
        events=events,
        interval=settings.scheduler_interval_seconds,
        soft_deadline=settings.tick_soft_deadline_seconds,
        max_workers=settings.scheduler_max_workers,
        lease_ttl=max(settings.lease_ttl_seconds, task_timeout),
        task_timeout=task_timeout,
        enable_auto_renewal=settings.enable_auto_renewal,
        renewal_window_days=settings.renewal_window_days,
    )
    return {
        "settings": settings,
        "domain_registry": registry,
        "domain_events": events,
        "policy_guard": guard,
        "domain_verifier": verifier,
        "ssl_provider": provider,
        "scheduler": scheduler,
    }


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[CertificateProvider] = None,
    verifier: Optional[DomainVerifier] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        components = build_components(settings, provider=provider, verifier=verifier)
        for name, component in components.items():
            setattr(app.state, name, component)

        scheduler = components["scheduler"]
        if settings.run_scheduler:
            scheduler.start()
        logger.info(
            f"Custom domain service ready (provider={components['ssl_provider'].name}, "
            f"method={settings.verification_method})"
        )
        try:
            yield
        finally:
            await scheduler.stop()
            await components["ssl_provider"].close()
            await components["domain_registry"].close()
            logger.info("Custom domain service stopped")

    app = FastAPI(
        title="Custom Domain Service",
        description="DNS ownership verification and TLS provisioning for team domains",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(domains_router)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        scheduler = request.app.state.scheduler
        report = scheduler.last_report
        return {
            "status": "ok",
            "scheduler_running": scheduler.running,
            "last_tick": report.to_dict() if report else None,
        }

    return app


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


_configure_logging()
app = create_app()
