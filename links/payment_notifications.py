"""
Notifications sent when a payment link is paid.
"""
import logging

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


def send_link_paid_notification(link) -> bool:
    """
    Email the staff member who created ``link`` that it has been paid.

    Returns:
        True if the email was sent, False otherwise. Delivery problems never
        propagate; the status change has already been stored.
    """
    owner = link.user
    if not owner.email:
        logger.info(f"Link owner {owner.pk} has no email, skipping paid notification for {link.pk}")
        return False

    try:
        subject = f"Pago recibido - {link.title}"
        message = (
            f"El link de pago \"{link.title}\" fue pagado.\n\n"
            f"Proveedor: {link.get_provider_display()}\n"
            f"Monto: ${link.amount_display} {link.currency}\n"
            f"Transacción: {link.transaction_id or '-'}\n"
            f"Método de pago: {link.payment_method or '-'}\n"
            f"Pagador: {link.payer_email or '-'}\n"
            f"Fecha: {link.paid_at:%Y-%m-%d %H:%M}\n\n"
            f"Detalle: {settings.SITE_URL}/api/links/{link.pk}\n"
        )
        send_mail(
            subject=subject,
            message=message,
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[owner.email],
            fail_silently=False,
        )
        logger.info(f"Paid notification sent to {owner.email} for link {link.pk}")
        return True

    except Exception as e:
        logger.error(f"Failed to send paid notification for link {link.pk}: {e}", exc_info=True)
        return False
