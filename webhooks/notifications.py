import logging
from typing import Any, Dict

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


def _event_name(payload: Dict[str, Any]) -> str:
    return payload.get("type") or payload.get("event") or "unknown"


def send_webhook_failure_alert(provider: str, payload: Dict[str, Any], error: Exception) -> None:
    """Send email alert when webhook processing fails."""
    if not settings.DEBUG:  # Only send in production
        try:
            subject = f"[LinkPagos] Webhook Processing Failed - {provider}"
            message = f"""
Webhook processing failed:

Provider: {provider}
Event: {_event_name(payload)}
Error: {str(error)}

The event was rolled back and will be accepted again when {provider} retries it.

Payload:
{payload}
"""
            send_mail(
                subject,
                message,
                settings.DEFAULT_FROM_EMAIL,
                [settings.SUPPORT_EMAIL],
                fail_silently=True,
            )
            logger.info(f"Sent webhook failure alert for {provider} {_event_name(payload)}")
        except Exception as e:
            logger.error(f"Failed to send webhook failure alert: {e}")


def send_verification_failure_alert(provider: str, payload: Dict[str, Any], signature: str = "") -> None:
    """Send email alert when webhook signature verification fails."""
    if not settings.DEBUG:  # Only send in production
        try:
            subject = f"[LinkPagos] Webhook Verification Failed - {provider}"
            message = f"""
Webhook signature verification failed:

Provider: {provider}
Event: {_event_name(payload)}
Signature: {signature[:20]}...

This could indicate:
1. Incorrect webhook secret configured
2. Potential security threat (spoofed webhook)

The event was rejected and not stored.
"""
            send_mail(
                subject,
                message,
                settings.DEFAULT_FROM_EMAIL,
                [settings.SUPPORT_EMAIL],
                fail_silently=True,
            )
            logger.warning(f"Sent verification failure alert for {provider} {_event_name(payload)}")
        except Exception as e:
            logger.error(f"Failed to send verification failure alert: {e}")
