import json
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from django.db import IntegrityError, transaction
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from links.config import get_provider_settings
from links.models import PaymentLink
from links.wompi import from_cents

from .models import WebhookLog
from .notifications import send_verification_failure_alert, send_webhook_failure_alert
from .signatures import verify_bold_signature, verify_wompi_checksum

logger = logging.getLogger(__name__)

BOLD_SIGNATURE_HEADER = "x-bold-signature"
BOLD_REFERENCE_PREFIX = "LNK_"
WOMPI_TRANSACTION_EVENT = "transaction.updated"


class DuplicateEvent(Exception):
    pass


def _parse_body(request: HttpRequest) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(request.body.decode("utf-8") or "{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON in webhook payload: {e}")
        return None
    return data if isinstance(data, dict) else None


def _already_logged(event_id: str) -> bool:
    return WebhookLog.objects.filter(event_id=event_id).exists()


def ingest_event(
    request: HttpRequest,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    payment_id: Optional[str],
    data: Dict[str, Any],
    signature: str,
    process: Callable[[Dict[str, Any], WebhookLog], str],
) -> HttpResponse:
    """
    Store the event and apply it exactly once.

    The log insert, the link transition and the ``processed`` flag commit
    together. The unique ``event_id`` turns a concurrent second delivery into
    an ``IntegrityError``, answered like any other duplicate.
    """
    if _already_logged(event_id):
        logger.info(f"Duplicate {provider} webhook {event_id} ignored")
        return JsonResponse({"message": "Event already processed"})

    try:
        with transaction.atomic():
            try:
                with transaction.atomic():
                    log = WebhookLog.objects.create(
                        provider=provider,
                        event_id=event_id,
                        event_type=event_type or "unknown",
                        payment_id=payment_id,
                        payload=data,
                        headers=dict(request.headers),
                        signature_header=signature,
                    )
            except IntegrityError:
                raise DuplicateEvent(event_id)
            message = process(data, log)
    except DuplicateEvent:
        logger.info(f"Concurrent duplicate {provider} webhook {event_id} ignored")
        return JsonResponse({"message": "Event already processed"})

    return JsonResponse({"message": message})


def _mark_processed(log: WebhookLog, replay: bool) -> None:
    log.processed = True
    log.processed_at = timezone.now()
    update_fields = ["processed", "processed_at"]
    if replay:
        log.replay_count += 1
        update_fields.append("replay_count")
        logger.info(f"Webhook {log.event_id} replayed. Total replays: {log.replay_count}")
    log.save(update_fields=update_fields)


# Bold


@csrf_exempt
@require_POST
def bold_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive Bold sale and void events.

    Only a bad signature (401), a malformed body (400) or an unexpected
    failure (500) yields a non-2xx; Bold retries anything else.
    """
    data: Dict[str, Any] = {}
    try:
        signature = request.headers.get(BOLD_SIGNATURE_HEADER, "")
        data = _parse_body(request)
        if data is None:
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        config = get_provider_settings()
        if not verify_bold_signature(request.body, signature, config.bold_secret_key, config.allow_unsigned_webhooks):
            logger.warning(f"Bold webhook signature verification failed for event {data.get('id')}")
            send_verification_failure_alert("BOLD", data, signature)
            return JsonResponse({"error": "Invalid signature"}, status=401)

        event_id = data.get("id")
        if not event_id:
            return JsonResponse({"error": "Missing event id"}, status=400)

        payment = data.get("data") or {}
        logger.info(
            f"Bold webhook received: {data.get('type')} (event={event_id}, payment={payment.get('payment_id')}, "
            f"reference={(payment.get('metadata') or {}).get('reference')})"
        )
        return ingest_event(
            request,
            provider=WebhookLog.PROVIDER_BOLD,
            event_id=str(event_id),
            event_type=data.get("type") or "",
            payment_id=payment.get("payment_id"),
            data=data,
            signature=signature,
            process=process_bold_event,
        )
    except Exception as e:
        logger.error(f"Error processing Bold webhook: {e}", exc_info=True)
        send_webhook_failure_alert("BOLD", data or {}, e)
        return JsonResponse({"error": "Internal server error"}, status=500)


def process_bold_event(data: Dict[str, Any], log: WebhookLog, replay: bool = False) -> str:
    event_type = data.get("type")
    payment = data.get("data") or {}
    payment_id = payment.get("payment_id")
    reference = (payment.get("metadata") or {}).get("reference") or ""

    if not reference.startswith(BOLD_REFERENCE_PREFIX):
        logger.info(f"Bold event {log.event_id} carries no link reference ({reference!r})")
        return "No reference"

    link = PaymentLink.objects.filter(provider=PaymentLink.PROVIDER_BOLD, provider_link_id=reference).first()
    if not link:
        logger.info(f"No payment link found for Bold reference {reference}")
        return "Link not found"

    if event_type == "SALE_APPROVED":
        link.mark_paid(payment_id, payment_method=payment.get("payment_method"))
    elif event_type == "SALE_REJECTED":
        link.reactivate(transaction_id=payment_id)
    elif event_type == "VOID_APPROVED":
        link.void()
    else:
        logger.warning(f"Unhandled Bold event type: {event_type}")

    _mark_processed(log, replay)
    return "Webhook processed"


# Wompi


def _uuid_or_none(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(value)
    except (TypeError, ValueError):
        return None


def _by_payment_link_id(txn: Dict[str, Any]) -> Optional[PaymentLink]:
    payment_link_id = txn.get("payment_link_id")
    if not payment_link_id:
        return None
    return PaymentLink.objects.filter(provider_link_id=payment_link_id).first()


def _by_reference(txn: Dict[str, Any]) -> Optional[PaymentLink]:
    reference = txn.get("reference")
    if not reference:
        return None
    links = PaymentLink.objects.filter(provider=PaymentLink.PROVIDER_WOMPI)
    link = links.filter(provider_link_id=reference).first()
    if link:
        return link
    link_id = _uuid_or_none(reference)
    return links.filter(pk=link_id).first() if link_id else None


def _by_checkout_reference(txn: Dict[str, Any]) -> Optional[PaymentLink]:
    # Our own checkout builds references as "{link id}_{epoch ms}"
    link_id, sep, _ = (txn.get("reference") or "").rpartition("_")
    link_id = _uuid_or_none(link_id) if sep else None
    if not link_id:
        return None
    return PaymentLink.objects.filter(provider=PaymentLink.PROVIDER_WOMPI, pk=link_id).first()


def _by_transaction_id(txn: Dict[str, Any]) -> Optional[PaymentLink]:
    transaction_id = txn.get("id")
    if not transaction_id:
        return None
    return PaymentLink.objects.filter(provider=PaymentLink.PROVIDER_WOMPI, transaction_id=transaction_id).first()


# Tried in order; the first match wins.
WOMPI_LOOKUPS = (
    ("payment_link_id", _by_payment_link_id),
    ("reference", _by_reference),
    ("checkout_reference", _by_checkout_reference),
    ("transaction_id", _by_transaction_id),
)


def find_wompi_link(txn: Dict[str, Any]) -> Optional[PaymentLink]:
    for name, lookup in WOMPI_LOOKUPS:
        link = lookup(txn)
        if link:
            logger.debug(f"Wompi transaction {txn.get('id')} matched link {link.pk} by {name}")
            return link
    return None


@csrf_exempt
@require_POST
def wompi_webhook(request: HttpRequest) -> HttpResponse:
    """Receive Wompi events; only ``transaction.updated`` touches links."""
    data: Dict[str, Any] = {}
    try:
        data = _parse_body(request)
        if data is None:
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        config = get_provider_settings()
        checksum = str((data.get("signature") or {}).get("checksum") or "")
        if not verify_wompi_checksum(data, config.wompi_events_secret, config.allow_unsigned_webhooks):
            logger.warning(f"Wompi webhook checksum verification failed for event {data.get('event')}")
            send_verification_failure_alert("WOMPI", data, checksum)
            return JsonResponse({"error": "Invalid signature"}, status=401)

        event = data.get("event")
        if event != WOMPI_TRANSACTION_EVENT:
            logger.info(f"Wompi event {event} ignored")
            return JsonResponse({"message": "Event ignored"})

        txn = (data.get("data") or {}).get("transaction") or {}
        if not txn.get("id"):
            return JsonResponse({"error": "Missing transaction"}, status=400)

        sent = data.get("timestamp") or data.get("sent_at")
        if not sent:
            return JsonResponse({"error": "Missing timestamp"}, status=400)

        logger.info(
            f"Wompi webhook received: {event} {txn.get('status')} "
            f"(transaction={txn['id']}, reference={txn.get('reference')})"
        )
        return ingest_event(
            request,
            provider=WebhookLog.PROVIDER_WOMPI,
            event_id=f"wompi_{txn['id']}_{sent}",
            event_type=event,
            payment_id=txn["id"],
            data=data,
            signature=checksum,
            process=process_wompi_event,
        )
    except Exception as e:
        logger.error(f"Error processing Wompi webhook: {e}", exc_info=True)
        send_webhook_failure_alert("WOMPI", data or {}, e)
        return JsonResponse({"error": "Internal server error"}, status=500)


def _finalized_at(txn: Dict[str, Any]):
    value = txn.get("finalized_at")
    if not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        logger.warning(f"Unparseable finalized_at {value!r} on Wompi transaction {txn.get('id')}")
        return None


def process_wompi_event(data: Dict[str, Any], log: WebhookLog, replay: bool = False) -> str:
    txn = (data.get("data") or {}).get("transaction") or {}
    transaction_id = txn.get("id")
    status = txn.get("status")

    link = find_wompi_link(txn)
    if not link:
        logger.info(
            f"No payment link found for Wompi transaction {transaction_id} "
            f"(payment_link_id={txn.get('payment_link_id')}, reference={txn.get('reference')})"
        )
        return "Link not found"

    amount_in_cents = txn.get("amount_in_cents")
    if (
        amount_in_cents is not None
        and link.amount_type == PaymentLink.AMOUNT_CLOSE
        and from_cents(amount_in_cents) != link.amount
    ):
        logger.warning(
            f"Amount mismatch for link {link.pk}: stored {link.amount}, Wompi reports {from_cents(amount_in_cents)}"
        )

    if status == "APPROVED":
        link.mark_paid(
            transaction_id,
            payment_method=txn.get("payment_method_type"),
            paid_at=_finalized_at(txn),
            payer_email=txn.get("customer_email"),
        )
    elif status in ("DECLINED", "ERROR"):
        link.reactivate()
    elif status == "VOIDED":
        link.void(clear_payer=True)
    elif status == "PENDING":
        link.mark_processing(transaction_id)
    else:
        logger.warning(f"Unhandled Wompi transaction status: {status}")

    _mark_processed(log, replay)
    return "Webhook processed"


PROCESSORS = {
    WebhookLog.PROVIDER_BOLD: process_bold_event,
    WebhookLog.PROVIDER_WOMPI: process_wompi_event,
}


def replay_webhook(log: WebhookLog) -> str:
    """Re-apply a stored event against the current link state, skipping dedup."""
    with transaction.atomic():
        return PROCESSORS[log.provider](log.payload, log, replay=True)
