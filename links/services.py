import logging
import time
from typing import Any, Dict, Optional

from .exceptions import BusinessRuleError
from .models import PaymentLink
from .providers import LinkParams, TransactionParams, TransactionResult, get_adapter
from .wompi import AcceptanceTokens

logger = logging.getLogger(__name__)


def create_payment_link(user, data: Dict[str, Any]) -> PaymentLink:
    """
    Create the link at the provider, then store it.

    Nothing is stored when the provider call fails; the ``ProviderError``
    propagates to the caller.
    """
    provider = data["provider"]
    adapter = get_adapter(provider)
    config = adapter.config

    params = LinkParams(
        title=data["title"],
        amount=data["amount"],
        amount_type=data["amountType"],
        description=data.get("description") or data["title"],
        expiration_date=data.get("expirationDate"),
        logo_url=data.get("logoUrl") or "",
        callback_url=data.get("callbackUrl") or "",
        redirect_url=f"{config.site_url}/pay/callback",
        payment_methods=data.get("paymentMethods") or [],
    )
    created = adapter.create_link(params)

    link = PaymentLink.objects.create(
        user=user,
        provider=provider,
        provider_link_id=created.provider_link_id,
        provider_url=created.provider_url,
        title=data["title"],
        description=data.get("description") or "",
        amount=data["amount"],
        amount_usd=data.get("amountUsd"),
        amount_type=data["amountType"],
        currency=config.currency,
        logo_url=data.get("logoUrl") or "",
        callback_url=data.get("callbackUrl") or "",
        expiration_date=data.get("expirationDate"),
        payment_methods=data.get("paymentMethods") or PaymentLink.default_payment_methods(provider),
    )
    logger.info(f"Payment link {link.pk} created at {provider} as {link.provider_link_id} by user {user.pk}")
    return link


def reconcile_link_status(link: PaymentLink) -> PaymentLink:
    """
    Pull the provider's view of an ACTIVE link and merge it into the stored row.

    Best effort: any failure is logged and the stored status is kept, so pages
    that call this always render. Wompi can only report expiry here; paid
    links reach PAID through webhooks.
    """
    if link.status != PaymentLink.STATUS_ACTIVE or not link.provider_link_id:
        return link

    try:
        info = get_adapter(link.provider).get_link_status(link.provider_link_id)

        if (
            info.amount is not None
            and link.amount_type == PaymentLink.AMOUNT_CLOSE
            and info.amount != link.amount
        ):
            logger.warning(
                f"Amount mismatch for link {link.pk}: stored {link.amount}, {link.provider} reports {info.amount}"
            )

        if link.sync_from_provider(info):
            logger.info(f"Link {link.pk} reconciled with {link.provider}: {link.status}")
    except Exception as e:
        logger.error(f"Error syncing link {link.pk} with {link.provider}: {e}", exc_info=True)
        link.refresh_from_db()

    return link


def get_checkout_tokens(link: PaymentLink) -> AcceptanceTokens:
    link.ensure_payable()
    if link.provider != PaymentLink.PROVIDER_WOMPI:
        raise BusinessRuleError("Este link se paga en la página de Bold", status=link.status)
    return get_adapter(link.provider).get_acceptance_tokens()


def make_reference(link: PaymentLink) -> str:
    return f"{link.pk}_{int(time.time() * 1000)}"


def pay_link(
    link: PaymentLink,
    payment_method: Dict[str, Any],
    customer_email: str,
    acceptance_token: str = "",
    personal_data_token: str = "",
    amount: Optional[int] = None,
) -> TransactionResult:
    """
    Create a provider transaction for ``link`` and move it to PROCESSING.

    A closed link is refused before any provider call.
    """
    link.ensure_payable()
    if link.provider != PaymentLink.PROVIDER_WOMPI:
        raise BusinessRuleError("Este link se paga en la página de Bold", status=link.status)

    if link.amount_type == PaymentLink.AMOUNT_OPEN and amount:
        charge = amount
    else:
        charge = link.amount

    adapter = get_adapter(link.provider)
    reference = make_reference(link)
    result = adapter.create_transaction(
        TransactionParams(
            amount=charge,
            customer_email=customer_email,
            reference=reference,
            payment_method=payment_method,
            acceptance_token=acceptance_token,
            personal_data_token=personal_data_token,
            redirect_url=f"{adapter.config.site_url}/pay/callback",
        )
    )

    link.mark_processing(result.transaction_id, payer_email=customer_email)
    logger.info(
        f"Transaction {result.transaction_id} ({payment_method.get('type')}) started for link {link.pk}, ref {reference}"
    )
    return result


def delete_payment_link(link: PaymentLink) -> None:
    link.ensure_deletable()
    link_id = link.pk
    link.delete()
    logger.info(f"Payment link {link_id} deleted")
