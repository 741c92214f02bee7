import base64
import hashlib
import hmac
import json
import time
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import Client, TestCase, override_settings
from django.urls import reverse

from links.models import PaymentLink
from webhooks.models import WebhookLog
from webhooks.signatures import verify_bold_signature, verify_wompi_checksum
from webhooks.views import WOMPI_LOOKUPS, replay_webhook

BOLD_SECRET = "bold-test-secret"
WOMPI_SECRET = "wompi-events-secret"
WOMPI_PROPERTIES = ["transaction.id", "transaction.status", "transaction.amount_in_cents"]


def bold_signature(body: bytes, secret: str = BOLD_SECRET) -> str:
    return hmac.new(secret.encode(), base64.b64encode(body), hashlib.sha256).hexdigest()


def wompi_event(transaction: dict, event: str = "transaction.updated", timestamp: int = 1700000000,
                secret: str = WOMPI_SECRET) -> dict:
    values = "".join(str(transaction[path.split(".", 1)[1]]) for path in WOMPI_PROPERTIES)
    checksum = hashlib.sha256(f"{values}{timestamp}{secret}".encode()).hexdigest()
    return {
        "event": event,
        "data": {"transaction": transaction},
        "environment": "test",
        "signature": {"properties": WOMPI_PROPERTIES, "checksum": checksum},
        "timestamp": timestamp,
    }


class SignatureTests(TestCase):
    def test_bold_signature(self):
        body = b'{"id": "evt_1"}'
        self.assertTrue(verify_bold_signature(body, bold_signature(body), BOLD_SECRET))
        self.assertFalse(verify_bold_signature(body, bold_signature(body, "other"), BOLD_SECRET))
        self.assertFalse(verify_bold_signature(body, "", BOLD_SECRET))

    def test_bold_unset_secret_fails_closed(self):
        self.assertFalse(verify_bold_signature(b"{}", "anything", ""))
        self.assertTrue(verify_bold_signature(b"{}", "anything", "", allow_unsigned=True))

    def test_wompi_checksum(self):
        payload = wompi_event({"id": "tx_1", "status": "APPROVED", "amount_in_cents": 1000000})
        self.assertTrue(verify_wompi_checksum(payload, WOMPI_SECRET))

        payload["signature"]["checksum"] = payload["signature"]["checksum"].upper()
        self.assertTrue(verify_wompi_checksum(payload, WOMPI_SECRET))

        payload["data"]["transaction"]["amount_in_cents"] = 1
        self.assertFalse(verify_wompi_checksum(payload, WOMPI_SECRET))

    def test_wompi_checksum_stringifies_like_javascript(self):
        payload = {
            "data": {"transaction": {"id": "tx_1", "status": "APPROVED", "finalized_at": None, "single_use": True}},
            "signature": {
                "properties": [
                    "transaction.id",
                    "transaction.status",
                    "transaction.finalized_at",
                    "transaction.single_use",
                    "transaction.not_sent",
                ],
                "checksum": hashlib.sha256(f"tx_1APPROVEDnulltrue1700000000{WOMPI_SECRET}".encode()).hexdigest(),
            },
            "timestamp": 1700000000,
        }
        self.assertTrue(verify_wompi_checksum(payload, WOMPI_SECRET))

        payload["data"]["transaction"]["single_use"] = False
        self.assertFalse(verify_wompi_checksum(payload, WOMPI_SECRET))

    def test_wompi_unset_secret_fails_closed(self):
        payload = wompi_event({"id": "tx_1", "status": "APPROVED", "amount_in_cents": 100})
        self.assertFalse(verify_wompi_checksum(payload, ""))
        self.assertTrue(verify_wompi_checksum(payload, "", allow_unsigned=True))


@override_settings(BOLD_SECRET_KEY=BOLD_SECRET)
class BoldWebhookTests(TestCase):
    def setUp(self):
        self.client = Client()
        self.user = get_user_model().objects.create_user(username="seller", email="seller@example.com", password="pass1234")
        self.link = PaymentLink.objects.create(
            user=self.user,
            provider=PaymentLink.PROVIDER_BOLD,
            provider_link_id="LNK_ABC123",
            title="Curso",
            amount=50000,
        )

    def _event(self, event_type="SALE_APPROVED", event_id="evt_1", reference="LNK_ABC123", payment_id="PAY_1"):
        return {
            "id": event_id,
            "type": event_type,
            "subject": payment_id,
            "data": {
                "payment_id": payment_id,
                "amount": {"total": 50000, "currency": "COP"},
                "payment_method": "PSE",
                "metadata": {"reference": reference},
            },
        }

    def _post(self, payload, signature=None):
        body = json.dumps(payload).encode()
        return self.client.post(
            reverse("webhooks:bold-webhook"),
            data=body,
            content_type="application/json",
            HTTP_X_BOLD_SIGNATURE=bold_signature(body) if signature is None else signature,
        )

    def test_sale_approved_marks_link_paid(self):
        response = self._post(self._event())

        self.assertEqual(response.status_code, 200)
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)
        self.assertEqual(self.link.transaction_id, "PAY_1")
        self.assertEqual(self.link.payment_method, "PSE")
        self.assertIsNotNone(self.link.paid_at)

        log = WebhookLog.objects.get()
        self.assertEqual(log.event_id, "evt_1")
        self.assertEqual(log.event_type, "SALE_APPROVED")
        self.assertEqual(log.payment_id, "PAY_1")
        self.assertTrue(log.processed)
        self.assertIsNotNone(log.processed_at)

    def test_duplicate_delivery_applies_once(self):
        self._post(self._event())
        # Reopen the link so a second application would be visible
        PaymentLink.objects.filter(pk=self.link.pk).update(status="ACTIVE", transaction_id=None, paid_at=None)

        response = self._post(self._event())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Event already processed")
        self.assertEqual(WebhookLog.objects.count(), 1)
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)

    def test_concurrent_duplicate_caught_by_unique_event_id(self):
        WebhookLog.objects.create(provider="BOLD", event_id="evt_1", event_type="SALE_APPROVED", payload={})

        # A second delivery that raced past the lookup still hits the unique constraint
        with patch("webhooks.views._already_logged", return_value=False):
            response = self._post(self._event())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Event already processed")
        self.assertEqual(WebhookLog.objects.count(), 1)
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)
        self.assertIsNone(self.link.transaction_id)

    def test_unprocessed_log_still_short_circuits(self):
        WebhookLog.objects.create(provider="BOLD", event_id="evt_1", event_type="SALE_APPROVED", payload={})
        response = self._post(self._event())
        self.assertEqual(response.json()["message"], "Event already processed")
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)

    def test_bad_signature_rejected(self):
        response = self._post(self._event(), signature="deadbeef")

        self.assertEqual(response.status_code, 401)
        self.assertFalse(WebhookLog.objects.exists())
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)

    @override_settings(BOLD_SECRET_KEY="")
    def test_missing_secret_rejects_by_default(self):
        response = self._post(self._event(), signature="")
        self.assertEqual(response.status_code, 401)
        self.assertFalse(WebhookLog.objects.exists())

    @override_settings(BOLD_SECRET_KEY="", WEBHOOK_ALLOW_UNSIGNED=True)
    def test_missing_secret_with_unsigned_allowed(self):
        response = self._post(self._event(), signature="")
        self.assertEqual(response.status_code, 200)
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)

    def test_invalid_json(self):
        response = self.client.post(
            reverse("webhooks:bold-webhook"), data="{not json", content_type="application/json"
        )
        self.assertEqual(response.status_code, 400)

    def test_sale_rejected_reactivates(self):
        self.link.mark_processing("PAY_0")
        self._post(self._event("SALE_REJECTED", payment_id="PAY_2"))
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)
        self.assertEqual(self.link.transaction_id, "PAY_2")
        self.assertIsNone(self.link.paid_at)

    def test_void_approved_reopens_paid_link(self):
        self._post(self._event())
        self._post(self._event("VOID_APPROVED", event_id="evt_2"))

        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)
        self.assertIsNone(self.link.transaction_id)
        self.assertIsNone(self.link.payment_method)
        self.assertIsNone(self.link.paid_at)

    def test_sale_rejected_does_not_unpay(self):
        self._post(self._event())
        self._post(self._event("SALE_REJECTED", event_id="evt_2", payment_id="PAY_2"))
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)
        self.assertEqual(self.link.transaction_id, "PAY_1")

    def test_unknown_event_is_logged_only(self):
        response = self._post(self._event("VOID_REJECTED"))
        self.assertEqual(response.status_code, 200)
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)
        self.assertTrue(WebhookLog.objects.filter(event_id="evt_1").exists())

    def test_reference_without_prefix_is_acknowledged(self):
        response = self._post(self._event(reference="ORDER_42"))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(WebhookLog.objects.get().processed)

    def test_unknown_link_is_acknowledged(self):
        response = self._post(self._event(reference="LNK_MISSING"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Link not found")
        self.assertFalse(WebhookLog.objects.get().processed)

    @patch("webhooks.views.process_bold_event", side_effect=RuntimeError("boom"))
    def test_processing_error_rolls_back(self, mock_process):
        response = self._post(self._event())
        self.assertEqual(response.status_code, 500)
        # Rolled back, so the provider's retry is processed normally
        self.assertFalse(WebhookLog.objects.exists())

    def test_replay_reapplies_stored_event(self):
        self._post(self._event())
        PaymentLink.objects.filter(pk=self.link.pk).update(status="ACTIVE")
        log = WebhookLog.objects.get()

        replay_webhook(log)

        log.refresh_from_db()
        self.assertEqual(log.replay_count, 1)
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)

    def test_bold_end_to_end(self):
        from links.services import create_payment_link

        with patch("links.providers.requests.request") as mock_request:
            mock_request.return_value.ok = True
            mock_request.return_value.status_code = 200
            mock_request.return_value.json.return_value = {
                "payload": {"payment_link": "LNK_E2E", "url": "https://checkout.bold.co/LNK_E2E"},
                "errors": [],
            }
            link = create_payment_link(
                self.user, {"provider": "BOLD", "title": "Consulta", "amount": 50000, "amountType": "CLOSE"}
            )
        self.assertEqual(mock_request.call_args[1]["json"]["amount"], {"currency": "COP", "total_amount": 50000})

        self._post(self._event(event_id="evt_e2e", reference="LNK_E2E"))
        link.refresh_from_db()
        self.assertEqual(link.status, PaymentLink.STATUS_PAID)
        self.assertIsNotNone(link.paid_at)


@override_settings(WOMPI_EVENTS_SECRET=WOMPI_SECRET)
class WompiWebhookTests(TestCase):
    def setUp(self):
        self.client = Client()
        self.user = get_user_model().objects.create_user(username="seller", email="seller@example.com", password="pass1234")
        self.link = PaymentLink.objects.create(
            user=self.user,
            provider=PaymentLink.PROVIDER_WOMPI,
            provider_link_id="test_W1",
            title="Taller",
            amount=10000,
        )

    def _transaction(self, **overrides):
        transaction = {
            "id": "1234-1700000000-abcde",
            "status": "APPROVED",
            "amount_in_cents": 1000000,
            "reference": "test_W1",
            "customer_email": "payer@example.com",
            "payment_method_type": "NEQUI",
            "payment_link_id": "test_W1",
            "finalized_at": "2024-05-01T15:30:00.000Z",
        }
        transaction.update(overrides)
        return transaction

    def _post(self, payload):
        return self.client.post(
            reverse("webhooks:wompi-webhook"), data=json.dumps(payload), content_type="application/json"
        )

    def test_approved_marks_link_paid(self):
        response = self._post(wompi_event(self._transaction()))

        self.assertEqual(response.status_code, 200)
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)
        self.assertEqual(self.link.transaction_id, "1234-1700000000-abcde")
        self.assertEqual(self.link.payment_method, "NEQUI")
        self.assertEqual(self.link.payer_email, "payer@example.com")
        self.assertEqual(self.link.paid_at.isoformat(), "2024-05-01T15:30:00+00:00")

        log = WebhookLog.objects.get()
        self.assertEqual(log.event_id, "wompi_1234-1700000000-abcde_1700000000")
        self.assertTrue(log.processed)

    def test_duplicate_delivery_applies_once(self):
        payload = wompi_event(self._transaction())
        self._post(payload)
        PaymentLink.objects.filter(pk=self.link.pk).update(status="ACTIVE")

        response = self._post(payload)

        self.assertEqual(response.json()["message"], "Event already processed")
        self.assertEqual(WebhookLog.objects.count(), 1)
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)

    def test_tampered_checksum_rejected(self):
        payload = wompi_event(self._transaction())
        payload["signature"]["checksum"] = "0" * 64

        response = self._post(payload)

        self.assertEqual(response.status_code, 401)
        self.assertFalse(WebhookLog.objects.exists())
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)

    def test_tampered_amount_rejected(self):
        payload = wompi_event(self._transaction())
        payload["data"]["transaction"]["amount_in_cents"] = 100
        self.assertEqual(self._post(payload).status_code, 401)

    def test_event_id_falls_back_to_sent_at(self):
        payload = wompi_event(self._transaction())
        del payload["timestamp"]
        payload["sent_at"] = "2024-05-01T15:30:01.000Z"
        with override_settings(WEBHOOK_ALLOW_UNSIGNED=True, WOMPI_EVENTS_SECRET=""):
            response = self._post(payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(WebhookLog.objects.get().event_id, "wompi_1234-1700000000-abcde_2024-05-01T15:30:01.000Z")

    def test_event_without_timestamp_rejected(self):
        payload = wompi_event(self._transaction())
        del payload["timestamp"]
        with override_settings(WEBHOOK_ALLOW_UNSIGNED=True, WOMPI_EVENTS_SECRET=""):
            response = self._post(payload)

        self.assertEqual(response.status_code, 400)
        self.assertFalse(WebhookLog.objects.exists())
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)

    def test_other_events_ignored(self):
        payload = wompi_event(self._transaction(), event="nequi_token.updated")
        response = self._post(payload)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Event ignored")
        self.assertFalse(WebhookLog.objects.exists())

    def test_status_table(self):
        cases = [
            ("PENDING", PaymentLink.STATUS_PROCESSING),
            ("DECLINED", PaymentLink.STATUS_ACTIVE),
            ("PENDING", PaymentLink.STATUS_PROCESSING),
            ("ERROR", PaymentLink.STATUS_ACTIVE),
        ]
        for timestamp, (status, expected) in enumerate(cases, start=1):
            self._post(wompi_event(self._transaction(status=status), timestamp=timestamp))
            self.link.refresh_from_db()
            self.assertEqual(self.link.status, expected, status)
        self.assertEqual(self.link.transaction_id, "1234-1700000000-abcde")

    def test_voided_clears_payment_and_payer(self):
        self._post(wompi_event(self._transaction(), timestamp=1))
        self._post(wompi_event(self._transaction(status="VOIDED"), timestamp=2))

        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)
        self.assertIsNone(self.link.transaction_id)
        self.assertIsNone(self.link.payment_method)
        self.assertIsNone(self.link.payer_email)
        self.assertIsNone(self.link.paid_at)

    def test_declined_does_not_unpay(self):
        self._post(wompi_event(self._transaction(), timestamp=1))
        self._post(wompi_event(self._transaction(status="DECLINED"), timestamp=2))
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)

    def test_payment_link_id_takes_precedence(self):
        other = PaymentLink.objects.create(
            user=self.user, provider="WOMPI", provider_link_id="test_OTHER", title="Otro", amount=10000
        )
        self._post(wompi_event(self._transaction(payment_link_id="test_W1", reference="test_OTHER")))
        self.link.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)
        self.assertEqual(other.status, PaymentLink.STATUS_ACTIVE)

    def test_lookup_by_reference(self):
        self._post(wompi_event(self._transaction(payment_link_id=None, reference="test_W1")))
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)

    def test_lookup_by_checkout_reference(self):
        reference = f"{self.link.pk}_{int(time.time() * 1000)}"
        self._post(wompi_event(self._transaction(payment_link_id=None, reference=reference)))
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)

    def test_lookup_by_transaction_id(self):
        self.link.mark_processing("tx_known")
        self._post(wompi_event(self._transaction(id="tx_known", payment_link_id=None, reference="unrelated")))
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PAID)

    def test_lookup_order(self):
        self.assertEqual(
            [name for name, _ in WOMPI_LOOKUPS],
            ["payment_link_id", "reference", "checkout_reference", "transaction_id"],
        )

    def test_reference_lookup_scoped_to_wompi(self):
        PaymentLink.objects.create(
            user=self.user, provider="BOLD", provider_link_id="LNK_BOLD", title="Bold", amount=10000
        )
        response = self._post(wompi_event(self._transaction(payment_link_id=None, reference="LNK_BOLD")))
        self.assertEqual(response.json()["message"], "Link not found")
        self.assertFalse(WebhookLog.objects.get().processed)

    def test_amount_mismatch_is_logged(self):
        with self.assertLogs("webhooks.views", level="WARNING") as logs:
            self._post(wompi_event(self._transaction(amount_in_cents=2000000)))
        self.assertTrue(any("Amount mismatch" in line for line in logs.output))

    @patch("webhooks.views.find_wompi_link", side_effect=RuntimeError("db down"))
    def test_processing_error_returns_500(self, mock_find):
        response = self._post(wompi_event(self._transaction()))
        self.assertEqual(response.status_code, 500)
        self.assertFalse(WebhookLog.objects.exists())
