from dataclasses import dataclass
from functools import lru_cache

from django.conf import settings
from django.core.signals import setting_changed
from django.dispatch import receiver


@dataclass(frozen=True)
class ProviderSettings:
    """Credentials and limits shared by the provider adapters and webhook verifiers."""

    bold_api_url: str
    bold_api_key: str
    bold_secret_key: str
    wompi_api_url: str
    wompi_public_key: str
    wompi_private_key: str
    wompi_integrity_secret: str
    wompi_events_secret: str
    currency: str = "COP"
    timeout: float = 15.0
    rate_limit_per_minute: int = 300
    allow_unsigned_webhooks: bool = False
    site_url: str = "http://localhost:8000"

    @classmethod
    def from_settings(cls) -> "ProviderSettings":
        return cls(
            bold_api_url=settings.BOLD_API_URL.rstrip("/"),
            bold_api_key=settings.BOLD_API_KEY,
            bold_secret_key=settings.BOLD_SECRET_KEY,
            wompi_api_url=settings.WOMPI_API_URL.rstrip("/"),
            wompi_public_key=settings.WOMPI_PUBLIC_KEY,
            wompi_private_key=settings.WOMPI_PRIVATE_KEY,
            wompi_integrity_secret=settings.WOMPI_INTEGRITY_SECRET,
            wompi_events_secret=settings.WOMPI_EVENTS_SECRET,
            currency=settings.PAYMENT_CURRENCY,
            timeout=settings.PROVIDER_TIMEOUT,
            rate_limit_per_minute=settings.PROVIDER_RATE_LIMIT_PER_MINUTE,
            allow_unsigned_webhooks=settings.WEBHOOK_ALLOW_UNSIGNED,
            site_url=settings.SITE_URL.rstrip("/"),
        )


@lru_cache(maxsize=1)
def get_provider_settings() -> ProviderSettings:
    return ProviderSettings.from_settings()


@receiver(setting_changed)
def _reset_provider_settings(**kwargs):
    get_provider_settings.cache_clear()
