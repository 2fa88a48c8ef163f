"""
Configuration management for the custom domain service.
"""

import logging
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import PositiveInt
from pydantic_settings import BaseSettings

logger = logging.getLogger("customdomain.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8000

    # Redis (empty string keeps everything in process memory)
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "customdomain:"

    # Custom domains
    ssl_provider: Literal["edge-saas", "acme"] = "edge-saas"
    verification_method: Literal["cname", "txt"] = "cname"
    max_domains_per_team: PositiveInt = 3
    verification_timeout_hours: PositiveInt = 72
    fallback_domain: str = "app.example.com"
    cname_target: str = ""  # defaults to fallback_domain
    txt_record_prefix: str = "_platform-verification"
    txt_value_prefix: str = "platform-verification"
    enable_auto_renewal: bool = True
    enable_domain_blocklist: bool = True
    domain_blocklist: List[str] = ["localhost", "local", "internal", "invalid", "test"]

    # DNS verification
    dns_resolvers: List[str] = ["8.8.8.8", "1.1.1.1", "9.9.9.9"]
    dns_timeout_seconds: float = 5.0

    # Scheduler
    run_scheduler: bool = True
    scheduler_interval_seconds: float = 60.0
    tick_soft_deadline_seconds: float = 45.0
    scheduler_max_workers: PositiveInt = 10
    lease_ttl_seconds: float = 300.0
    renewal_window_days: PositiveInt = 30

    # Certificate providers
    provider_timeout_seconds: float = 30.0
    cloudflare_api_base: str = "https://api.cloudflare.com/client/v4"
    cloudflare_api_token: str = ""
    cloudflare_zone_id: str = ""
    acme_server: str = "https://acme-v02.api.letsencrypt.org/directory"
    acme_email: str = ""
    acme_challenge: Literal["http-01", "dns-01"] = "http-01"
    acme_webroot: str = "/var/www/acme"
    acme_dns_plugin: str = "dns-cloudflare"
    acme_dns_credentials: Optional[str] = None
    acme_timeout_seconds: float = 120.0
    certbot_bin: str = "certbot"
    certbot_config_dir: str = "/etc/letsencrypt"

    # Logging
    log_level: str = "INFO"

    # Debug mode
    debug: bool = False

    model_config = {
        "env_prefix": "CUSTOMDOMAIN_",
        "env_file": ".env",
        "extra": "ignore"
    }

    @property
    def effective_cname_target(self) -> str:
        return (self.cname_target or self.fallback_domain).lower().rstrip(".")

    @property
    def effective_blocklist(self) -> List[str]:
        """Configured blocklist plus the platform's own domains."""
        entries = [d.lower().rstrip(".") for d in self.domain_blocklist]
        for own in (self.fallback_domain, self.effective_cname_target):
            own = own.lower().rstrip(".")
            if own and own not in entries:
                entries.append(own)
        return entries

    def validate_required(self) -> bool:
        """Validate that the selected certificate provider is configured."""
        if self.ssl_provider == "edge-saas":
            if not self.cloudflare_api_token or not self.cloudflare_zone_id:
                raise ValueError(
                    "CUSTOMDOMAIN_CLOUDFLARE_API_TOKEN and "
                    "CUSTOMDOMAIN_CLOUDFLARE_ZONE_ID are required for the "
                    "edge-saas provider"
                )
        elif self.acme_challenge == "dns-01" and not self.acme_dns_credentials:
            raise ValueError(
                "CUSTOMDOMAIN_ACME_DNS_CREDENTIALS is required for dns-01"
            )
        if not self.fallback_domain:
            raise ValueError("CUSTOMDOMAIN_FALLBACK_DOMAIN is required")
        return True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    # In production, validate required fields
    if not settings.debug:
        try:
            settings.validate_required()
        except ValueError as e:
            logger.warning(f"Configuration warning: {e}")
    return settings
