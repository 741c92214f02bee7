from unittest.mock import Mock

import requests
from django.test import SimpleTestCase

from links.checkout import CheckoutError, CheckoutValidationError, LinkClosed, WompiCheckout
from links.tests.fakes import fake_response

LINK_ID = "6f1c3a52-2b1e-4d8e-9a55-0d6f2b9f4e10"
TOKENS = {"acceptanceToken": "acc_1", "personalDataToken": "pd_1", "publicKey": "pub_test_1"}


class WompiCheckoutTests(SimpleTestCase):
    def setUp(self):
        self.http = Mock(spec=requests.Session)
        self.checkout = WompiCheckout(
            "https://linkpagos.test/", LINK_ID, wompi_api_url="https://wompi.test/v1", session=self.http
        )

    def test_start_fetches_session_tokens(self):
        self.http.request.return_value = fake_response(TOKENS)
        session = self.checkout.start()
        self.assertEqual(session.public_key, "pub_test_1")
        self.http.request.assert_called_once_with(
            "GET", f"https://linkpagos.test/api/pay/{LINK_ID}", json=None, timeout=15.0
        )

    def test_closed_link_ends_checkout(self):
        self.http.request.return_value = fake_response(
            {"error": "Este link ya no está disponible para pagos", "status": "PAID"}, status_code=400
        )
        with self.assertRaises(LinkClosed) as ctx:
            self.checkout.start()
        self.assertEqual(ctx.exception.status, "PAID")

    def test_financial_institutions_use_public_key(self):
        self.http.request.side_effect = [
            fake_response(TOKENS),
            fake_response({"data": [{"financial_institution_code": "1007", "financial_institution_name": "BANCOLOMBIA"}]}),
        ]
        banks = self.checkout.financial_institutions()
        self.assertEqual(banks[0]["financial_institution_code"], "1007")
        args, kwargs = self.http.request.call_args
        self.assertEqual(args, ("GET", "https://wompi.test/v1/pse/financial_institutions"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer pub_test_1")

    def test_invalid_card_fails_before_any_call(self):
        with self.assertRaises(CheckoutValidationError) as ctx:
            self.checkout.pay_with_card(
                email="payer@example.com",
                number="4242 4242",
                exp_month="12",
                exp_year="29",
                cvc="123",
                card_holder="Ana Pérez",
            )
        self.assertIn("number", ctx.exception.errors)
        self.http.request.assert_not_called()

    def test_card_fields_validated(self):
        cases = [
            {"exp_month": "13"},
            {"exp_year": "2029"},
            {"cvc": "12"},
            {"card_holder": "   "},
        ]
        valid = {
            "email": "payer@example.com",
            "number": "4242424242424242",
            "exp_month": "12",
            "exp_year": "29",
            "cvc": "123",
            "card_holder": "Ana Pérez",
        }
        for override in cases:
            with self.assertRaises(CheckoutValidationError):
                self.checkout.pay_with_card(**{**valid, **override})
        self.http.request.assert_not_called()

    def test_card_flow_tokenizes_then_reloads(self):
        self.http.request.side_effect = [
            fake_response(TOKENS),
            fake_response({"status": "CREATED", "data": {"id": "tok_test_1"}}),
            fake_response({"success": True, "data": {"id": "tx_1", "status": "PENDING", "async_payment_url": None}}),
        ]
        result = self.checkout.pay_with_card(
            email="payer@example.com",
            number="4242 4242 4242 4242",
            exp_month="12",
            exp_year="29",
            cvc="123",
            card_holder="Ana Pérez",
            installments=3,
        )

        tokenize = self.http.request.call_args_list[1]
        self.assertEqual(tokenize[0], ("POST", "https://wompi.test/v1/tokens/cards"))
        self.assertEqual(tokenize[1]["json"]["number"], "4242424242424242")

        submit = self.http.request.call_args_list[2]
        self.assertEqual(submit[0], ("POST", f"https://linkpagos.test/api/pay/{LINK_ID}"))
        self.assertEqual(
            submit[1]["json"],
            {
                "paymentMethod": {"type": "CARD", "token": "tok_test_1", "installments": 3},
                "customerEmail": "payer@example.com",
                "acceptanceToken": "acc_1",
                "personalDataToken": "pd_1",
            },
        )
        self.assertEqual(result.transaction_id, "tx_1")
        self.assertEqual(result.action, "reload")

    def test_pse_flow_redirects_to_bank(self):
        self.http.request.side_effect = [
            fake_response(TOKENS),
            fake_response({
                "success": True,
                "data": {"id": "tx_pse", "status": "PENDING", "async_payment_url": "https://bank.test/pse"},
            }),
        ]
        result = self.checkout.pay_with_pse(
            email="payer@example.com", financial_institution_code="1007", user_legal_id="123456"
        )

        method = self.http.request.call_args[1]["json"]["paymentMethod"]
        self.assertEqual(method["financial_institution_code"], "1007")
        self.assertEqual(method["user_legal_id"], "123456")
        self.assertEqual(method["user_legal_id_type"], "CC")
        self.assertEqual(method["user_type"], 0)
        self.assertEqual(result.action, "redirect")
        self.assertEqual(result.async_payment_url, "https://bank.test/pse")

    def test_pse_requires_bank(self):
        with self.assertRaises(CheckoutValidationError) as ctx:
            self.checkout.pay_with_pse(email="payer@example.com", financial_institution_code="0", user_legal_id="1")
        self.assertEqual(ctx.exception.message, "Selecciona un banco")
        self.http.request.assert_not_called()

    def test_nequi_phone(self):
        with self.assertRaises(CheckoutValidationError):
            self.checkout.pay_with_nequi(email="payer@example.com", phone_number="300 123")
        self.http.request.assert_not_called()

        self.http.request.side_effect = [
            fake_response(TOKENS),
            fake_response({"success": True, "data": {"id": "tx_nequi", "status": "PENDING"}}),
        ]
        result = self.checkout.pay_with_nequi(email="payer@example.com", phone_number="300 123 4567")
        self.assertEqual(
            self.http.request.call_args[1]["json"]["paymentMethod"], {"type": "NEQUI", "phone_number": "3001234567"}
        )
        self.assertEqual(result.action, "reload")

    def test_backend_error_is_relayed(self):
        self.http.request.side_effect = [
            fake_response(TOKENS),
            fake_response({"error": "La tarjeta fue rechazada"}, status_code=400),
        ]
        with self.assertRaises(CheckoutError) as ctx:
            self.checkout.pay_with_nequi(email="payer@example.com", phone_number="3001234567")
        self.assertNotIsInstance(ctx.exception, LinkClosed)
        self.assertEqual(ctx.exception.message, "La tarjeta fue rechazada")

    def test_link_paid_meanwhile(self):
        self.http.request.side_effect = [
            fake_response(TOKENS),
            fake_response({"error": "Este link ya no está disponible para pagos", "status": "EXPIRED"}, 400),
        ]
        with self.assertRaises(LinkClosed) as ctx:
            self.checkout.pay_with_nequi(email="payer@example.com", phone_number="3001234567")
        self.assertEqual(ctx.exception.status, "EXPIRED")
