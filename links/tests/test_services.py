from unittest.mock import patch

import requests
from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase

from links.exceptions import BusinessRuleError, ProviderError
from links.models import PaymentLink
from links.providers import CreatedLink, LinkStatusInfo, TransactionResult
from links.services import (
    create_payment_link,
    delete_payment_link,
    make_reference,
    pay_link,
    reconcile_link_status,
)
from links.tests.fakes import fake_response, make_config
from links.wompi import WompiAdapter

User = get_user_model()


class CreatePaymentLinkTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="seller", email="seller@example.com", password="pass1234")
        self.data = {
            "provider": "BOLD",
            "title": "Curso de fotografía",
            "description": "",
            "amount": 50000,
            "amountType": "CLOSE",
            "paymentMethods": [],
        }

    @patch("links.services.get_adapter")
    def test_link_stored_after_provider_creates_it(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_link.return_value = CreatedLink("LNK_NEW", "https://checkout.bold.co/LNK_NEW")

        link = create_payment_link(self.user, self.data)

        mock_get_adapter.assert_called_once_with("BOLD")
        params = adapter.create_link.call_args[0][0]
        self.assertEqual(params.amount, 50000)
        self.assertEqual(params.amount_type, "CLOSE")
        self.assertEqual(params.description, "Curso de fotografía")
        self.assertEqual(params.redirect_url, "https://linkpagos.test/pay/callback")
        self.assertEqual(link.provider_link_id, "LNK_NEW")
        self.assertEqual(link.status, PaymentLink.STATUS_ACTIVE)
        self.assertEqual(link.payment_methods, ["CREDIT_CARD", "PSE", "NEQUI", "BOTON_BANCOLOMBIA"])

    @patch("links.services.get_adapter")
    def test_nothing_stored_when_provider_fails(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_link.side_effect = ProviderError("invalid amount", provider="BOLD")

        with self.assertRaises(ProviderError):
            create_payment_link(self.user, self.data)
        self.assertFalse(PaymentLink.objects.exists())


class ReconcileLinkStatusTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="seller", email="seller@example.com", password="pass1234")
        self.bold_link = PaymentLink.objects.create(
            user=self.user, provider="BOLD", provider_link_id="LNK_1", title="Curso", amount=50000
        )
        self.wompi_link = PaymentLink.objects.create(
            user=self.user, provider="WOMPI", provider_link_id="test_1", title="Taller", amount=10000
        )

    @patch("links.services.get_adapter")
    def test_bold_status_is_merged(self, mock_get_adapter):
        mock_get_adapter.return_value.get_link_status.return_value = LinkStatusInfo(
            status="PAID", active=False, transaction_id="PAY_1", payment_method="PSE",
            amount=50000, carries_transaction=True,
        )
        reconcile_link_status(self.bold_link)

        self.bold_link.refresh_from_db()
        self.assertEqual(self.bold_link.status, PaymentLink.STATUS_PAID)
        self.assertEqual(self.bold_link.transaction_id, "PAY_1")
        self.assertIsNotNone(self.bold_link.paid_at)

    @patch("links.services.get_adapter")
    def test_inactive_wompi_link_expires(self, mock_get_adapter):
        mock_get_adapter.return_value.get_link_status.return_value = LinkStatusInfo(
            status="EXPIRED", active=False, carries_transaction=False
        )
        reconcile_link_status(self.wompi_link)
        self.wompi_link.refresh_from_db()
        self.assertEqual(self.wompi_link.status, PaymentLink.STATUS_EXPIRED)

    @patch("links.services.get_adapter")
    def test_provider_failure_keeps_stored_status(self, mock_get_adapter):
        mock_get_adapter.return_value.get_link_status.side_effect = ProviderError("Bold API error: 500")

        with self.assertLogs("links.services", level="ERROR"):
            link = reconcile_link_status(self.bold_link)

        self.assertIs(link, self.bold_link)
        self.assertEqual(link.status, PaymentLink.STATUS_ACTIVE)

    @patch("links.services.get_adapter")
    def test_malformed_response_is_swallowed(self, mock_get_adapter):
        mock_get_adapter.return_value.get_link_status.side_effect = KeyError("data")
        link = reconcile_link_status(self.wompi_link)
        self.assertEqual(link.status, PaymentLink.STATUS_ACTIVE)

    @patch("links.services.get_adapter")
    def test_only_active_links_with_provider_id_are_polled(self, mock_get_adapter):
        self.bold_link.status = PaymentLink.STATUS_PROCESSING
        reconcile_link_status(self.bold_link)
        no_provider_id = PaymentLink.objects.create(user=self.user, title="Borrador", amount=1000)
        reconcile_link_status(no_provider_id)
        mock_get_adapter.assert_not_called()

    @patch("links.services.get_adapter")
    def test_failed_save_restores_every_field(self, mock_get_adapter):
        mock_get_adapter.return_value.get_link_status.return_value = LinkStatusInfo(
            status="PAID", active=False, transaction_id="PAY_1", payment_method="PSE", carries_transaction=True,
        )
        with patch.object(PaymentLink, "save", side_effect=DatabaseError("database is locked")):
            with self.assertLogs("links.services", level="ERROR"):
                link = reconcile_link_status(self.bold_link)

        self.assertEqual(link.status, PaymentLink.STATUS_ACTIVE)
        self.assertIsNone(link.transaction_id)
        self.assertIsNone(link.payment_method)
        self.assertIsNone(link.paid_at)

    @patch("links.services.get_adapter")
    def test_amount_mismatch_is_logged(self, mock_get_adapter):
        mock_get_adapter.return_value.get_link_status.return_value = LinkStatusInfo(
            status=None, active=True, amount=20000
        )
        with self.assertLogs("links.services", level="WARNING") as logs:
            reconcile_link_status(self.wompi_link)
        self.assertIn("Amount mismatch", logs.output[0])


class PayLinkTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="seller", email="seller@example.com", password="pass1234")
        self.link = PaymentLink.objects.create(
            user=self.user, provider="WOMPI", provider_link_id="test_1", title="Taller", amount=10000
        )
        self.method = {"type": "NEQUI", "phone_number": "3001234567"}

    @patch("links.services.get_adapter")
    def test_closed_link_makes_no_provider_call(self, mock_get_adapter):
        for status in (PaymentLink.STATUS_PAID, PaymentLink.STATUS_EXPIRED):
            self.link.status = status
            with self.assertRaises(BusinessRuleError):
                pay_link(self.link, self.method, "payer@example.com")
        mock_get_adapter.assert_not_called()

    @patch("links.services.get_adapter")
    def test_bold_link_cannot_use_wompi_checkout(self, mock_get_adapter):
        self.link.provider = PaymentLink.PROVIDER_BOLD
        with self.assertRaises(BusinessRuleError):
            pay_link(self.link, self.method, "payer@example.com")
        mock_get_adapter.assert_not_called()

    @patch("links.services.get_adapter")
    def test_transaction_moves_link_to_processing(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_transaction.return_value = TransactionResult(transaction_id="tx_1", status="PENDING")

        result = pay_link(self.link, self.method, "payer@example.com", "acc", "pd")

        params = adapter.create_transaction.call_args[0][0]
        self.assertEqual(params.amount, 10000)
        self.assertTrue(params.reference.startswith(f"{self.link.pk}_"))
        self.assertEqual(params.acceptance_token, "acc")
        self.assertEqual(result.transaction_id, "tx_1")
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PROCESSING)
        self.assertEqual(self.link.transaction_id, "tx_1")
        self.assertEqual(self.link.payer_email, "payer@example.com")

    @patch("links.services.get_adapter")
    def test_open_link_charges_payer_amount(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_transaction.return_value = TransactionResult(transaction_id="tx_2", status="PENDING")
        self.link.amount_type = PaymentLink.AMOUNT_OPEN
        self.link.save()

        pay_link(self.link, self.method, "payer@example.com", amount=25000)
        self.assertEqual(adapter.create_transaction.call_args[0][0].amount, 25000)

    @patch("links.services.get_adapter")
    def test_close_link_ignores_payer_amount(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_transaction.return_value = TransactionResult(transaction_id="tx_3", status="PENDING")

        pay_link(self.link, self.method, "payer@example.com", amount=1000)
        self.assertEqual(adapter.create_transaction.call_args[0][0].amount, 10000)

    @patch("links.services.get_adapter")
    def test_provider_error_leaves_link_active(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_transaction.side_effect = ProviderError("Token inválido", provider="WOMPI")

        with self.assertRaises(ProviderError):
            pay_link(self.link, self.method, "payer@example.com")
        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_ACTIVE)

    @patch("links.providers.requests.request")
    @patch("links.services.get_adapter")
    def test_pse_link_processing_even_if_redirect_lookup_times_out(self, mock_get_adapter, mock_request):
        mock_get_adapter.return_value = WompiAdapter(make_config())
        mock_request.side_effect = [
            fake_response({"data": {"id": "tx_1", "status": "PENDING", "payment_method": {"type": "PSE", "extra": {}}}}),
            requests.Timeout(),
        ]
        method = {"type": "PSE", "financial_institution_code": "1007", "user_legal_id": "123456"}

        result = pay_link(self.link, method, "payer@example.com", "acc", "pd")

        self.assertIsNone(result.async_payment_url)
        self.link.refresh_from_db()
        self.assertEqual(self.link.transaction_id, "tx_1")
        self.assertEqual(self.link.status, PaymentLink.STATUS_PROCESSING)

    def test_reference_format(self):
        prefix, _, timestamp = make_reference(self.link).rpartition("_")
        self.assertEqual(prefix, str(self.link.pk))
        self.assertTrue(timestamp.isdigit())


class DeletePaymentLinkTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="seller", email="seller@example.com", password="pass1234")

    def test_paid_link_is_kept(self):
        link = PaymentLink.objects.create(user=self.user, title="Taller", amount=10000, status="PAID")
        with self.assertRaises(BusinessRuleError):
            delete_payment_link(link)
        self.assertTrue(PaymentLink.objects.filter(pk=link.pk).exists())

    def test_active_link_is_deleted(self):
        link = PaymentLink.objects.create(user=self.user, title="Taller", amount=10000)
        delete_payment_link(link)
        self.assertFalse(PaymentLink.objects.filter(pk=link.pk).exists())
