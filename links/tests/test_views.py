import json
import uuid
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import Client, TestCase, override_settings
from django.urls import reverse

from links.exceptions import ProviderError, ProviderTimeout
from links.models import PaymentLink, UserProfile
from links.providers import CreatedLink, TransactionResult
from links.tests.fakes import fake_response, make_config
from links.wompi import AcceptanceTokens

User = get_user_model()


class LinkApiTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="seller", email="seller@example.com", password="pass1234")
        self.other = User.objects.create_user(username="other", email="other@example.com", password="pass1234")
        self.client = Client()
        self.client.force_login(self.user)

    def _post(self, payload):
        return self.client.post(reverse("links:api-links"), data=json.dumps(payload), content_type="application/json")

    def test_requires_login(self):
        response = Client().get(reverse("links:api-links"))
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "No autorizado")

    @patch("links.services.get_adapter")
    def test_create_link(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_link.return_value = CreatedLink("test_W1", "https://checkout.wompi.co/l/test_W1")

        response = self._post({"title": "Taller", "amount": 10000, "paymentMethods": ["PSE", "CARD", "PSE"]})

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["provider"], "WOMPI")
        self.assertEqual(data["amountType"], "CLOSE")
        self.assertEqual(data["providerLinkId"], "test_W1")
        self.assertEqual(data["paymentMethods"], ["PSE", "CARD"])
        self.assertEqual(data["status"], "ACTIVE")
        self.assertEqual(PaymentLink.objects.get().user, self.user)

    @patch("links.services.get_adapter")
    def test_validation_errors(self, mock_get_adapter):
        response = self._post({"title": "T", "amount": 10000})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "El título debe tener al menos 2 caracteres")

        response = self._post({"title": "Taller", "amount": 500})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "El monto mínimo es $1,000 COP")

        response = self._post({"title": "Taller", "amount": 5000, "provider": "BOLD", "paymentMethods": ["CARD"]})
        self.assertEqual(response.status_code, 400)
        self.assertIn("CARD", response.json()["error"])

        response = self._post({"title": "Taller", "amount": 5000, "expirationDate": "2001-01-01T00:00:00Z"})
        self.assertEqual(response.status_code, 400)
        mock_get_adapter.assert_not_called()

    @patch("links.services.get_adapter")
    def test_provider_error_is_relayed(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_link.side_effect = ProviderError("invalid amount, invalid currency", provider="BOLD")

        response = self._post({"title": "Taller", "amount": 5000, "provider": "BOLD"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "invalid amount, invalid currency"})
        self.assertFalse(PaymentLink.objects.exists())

    @patch("links.services.get_adapter")
    def test_provider_timeout_is_retryable(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_link.side_effect = ProviderTimeout("Wompi no respondió a tiempo, intenta de nuevo")

        response = self._post({"title": "Taller", "amount": 5000})
        self.assertEqual(response.status_code, 503)
        self.assertTrue(response.json()["retryable"])

    def test_list_shows_only_own_links(self):
        PaymentLink.objects.create(user=self.user, title="Mío", amount=5000)
        PaymentLink.objects.create(user=self.other, title="Ajeno", amount=5000)

        data = self.client.get(reverse("links:api-links")).json()
        self.assertEqual(data["total"], 1)
        self.assertEqual(data["data"][0]["title"], "Mío")

    def test_admin_lists_all_links_with_filters(self):
        self.user.profile.role = UserProfile.ROLE_ADMIN
        self.user.profile.save()
        PaymentLink.objects.create(user=self.user, title="Mío", amount=5000, provider="BOLD")
        PaymentLink.objects.create(user=self.other, title="Ajeno", amount=5000, status="PAID")

        self.assertEqual(self.client.get(reverse("links:api-links")).json()["total"], 2)
        data = self.client.get(reverse("links:api-links"), {"status": "PAID"}).json()
        self.assertEqual([link["title"] for link in data["data"]], ["Ajeno"])
        data = self.client.get(reverse("links:api-links"), {"provider": "BOLD", "pageSize": 1}).json()
        self.assertEqual(data["total"], 1)
        self.assertEqual(data["totalPages"], 1)

    def test_detail_forbidden_for_other_users(self):
        link = PaymentLink.objects.create(user=self.other, title="Ajeno", amount=5000)
        response = self.client.get(reverse("links:api-link-detail", args=[link.pk]))
        self.assertEqual(response.status_code, 403)

    @patch("links.services.get_adapter")
    def test_detail_reconciles(self, mock_get_adapter):
        mock_get_adapter.return_value.get_link_status.side_effect = ProviderError("Bold API error: 500")
        link = PaymentLink.objects.create(user=self.user, title="Mío", amount=5000, provider_link_id="LNK_1")

        response = self.client.get(reverse("links:api-link-detail", args=[link.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ACTIVE")
        mock_get_adapter.return_value.get_link_status.assert_called_once_with("LNK_1")

    def test_delete(self):
        paid = PaymentLink.objects.create(user=self.user, title="Pagado", amount=5000, status="PAID")
        response = self.client.delete(reverse("links:api-link-detail", args=[paid.pk]))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "No se puede eliminar un link que ya fue pagado")

        active = PaymentLink.objects.create(user=self.user, title="Activo", amount=5000)
        response = self.client.delete(reverse("links:api-link-detail", args=[active.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(PaymentLink.objects.filter(pk=active.pk).exists())

    @patch("links.views.cloudinary.uploader.upload")
    def test_upload_logo(self, mock_upload):
        from django.core.files.uploadedfile import SimpleUploadedFile

        mock_upload.return_value = {"secure_url": "https://res.cloudinary.com/demo/logo.png"}
        upload = SimpleUploadedFile("logo.png", b"\x89PNG\r\n", content_type="image/png")
        response = self.client.post(reverse("links:api-upload"), {"file": upload})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["url"], "https://res.cloudinary.com/demo/logo.png")

        text = SimpleUploadedFile("notes.txt", b"hola", content_type="text/plain")
        response = self.client.post(reverse("links:api-upload"), {"file": text})
        self.assertEqual(response.status_code, 400)


class PayApiTests(TestCase):
    def setUp(self):
        self.owner = User.objects.create_user(username="seller", email="seller@example.com", password="pass1234")
        self.link = PaymentLink.objects.create(
            user=self.owner, provider="WOMPI", provider_link_id="test_W1", title="Taller", amount=10000
        )
        self.client = Client()
        self.url = reverse("links:api-pay", args=[self.link.pk])

    def _pay(self, payment_method, **extra):
        payload = {
            "paymentMethod": payment_method,
            "customerEmail": "payer@example.com",
            "acceptanceToken": "acc_1",
            "personalDataToken": "pd_1",
            **extra,
        }
        return self.client.post(self.url, data=json.dumps(payload), content_type="application/json")

    @patch("links.services.get_adapter")
    def test_get_tokens(self, mock_get_adapter):
        mock_get_adapter.return_value.get_acceptance_tokens.return_value = AcceptanceTokens("acc_1", "pd_1", "pub_test")
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(), {"acceptanceToken": "acc_1", "personalDataToken": "pd_1", "publicKey": "pub_test"}
        )

    def test_unknown_link(self):
        response = self.client.get(reverse("links:api-pay", args=[uuid.uuid4()]))
        self.assertEqual(response.status_code, 404)

    @patch("links.services.get_adapter")
    def test_closed_link_refused_without_provider_call(self, mock_get_adapter):
        for status in ("PAID", "EXPIRED"):
            PaymentLink.objects.filter(pk=self.link.pk).update(status=status)

            response = self.client.get(self.url)
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["status"], status)

            response = self._pay({"type": "NEQUI", "phone_number": "3001234567"})
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["error"], "Este link ya no está disponible para pagos")
        mock_get_adapter.assert_not_called()

    @patch("links.providers.requests.request")
    def test_pse_payment_returns_bank_redirect(self, mock_request):
        mock_request.return_value = fake_response({
            "data": {
                "id": "1234-1700000000-abcde",
                "status": "PENDING",
                "payment_method": {"type": "PSE", "extra": {"async_payment_url": "https://bank.test/pse"}},
            }
        })
        response = self._pay({
            "type": "PSE",
            "user_type": 0,
            "user_legal_id_type": "CC",
            "user_legal_id": "123456",
            "financial_institution_code": "1007",
        })

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["async_payment_url"], "https://bank.test/pse")

        sent = mock_request.call_args[1]["json"]
        self.assertEqual(sent["payment_method"]["financial_institution_code"], "1007")
        self.assertEqual(sent["payment_method"]["user_legal_id"], "123456")
        self.assertEqual(sent["payment_method"]["payment_description"], "Taller")
        self.assertEqual(sent["amount_in_cents"], 1000000)
        self.assertTrue(sent["reference"].startswith(f"{self.link.pk}_"))

        self.link.refresh_from_db()
        self.assertEqual(self.link.status, PaymentLink.STATUS_PROCESSING)
        self.assertEqual(self.link.transaction_id, "1234-1700000000-abcde")
        self.assertEqual(self.link.payer_email, "payer@example.com")

    @patch("links.services.get_adapter")
    def test_method_validation(self, mock_get_adapter):
        cases = [
            ({"type": "CARD"}, "El token de la tarjeta es obligatorio"),
            ({"type": "PSE", "user_legal_id": "123"}, "Selecciona un banco"),
            ({"type": "NEQUI", "phone_number": "300123"}, "El número de celular debe tener 10 dígitos"),
        ]
        for method, message in cases:
            response = self._pay(method)
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["error"], message)

        response = self._pay({"type": "CARD", "token": "tok_1"}, customerEmail="not-an-email")
        self.assertEqual(response.status_code, 400)
        mock_get_adapter.assert_not_called()

    @patch("links.services.get_adapter")
    def test_provider_error_is_normalized_message(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_transaction.side_effect = ProviderError("La tarjeta fue rechazada", provider="WOMPI")

        response = self._pay({"type": "CARD", "token": "tok_1", "installments": 1})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "La tarjeta fue rechazada"})

    @patch("links.services.get_adapter")
    def test_card_payment_reloads(self, mock_get_adapter):
        adapter = mock_get_adapter.return_value
        adapter.config = make_config()
        adapter.create_transaction.return_value = TransactionResult(
            transaction_id="tx_card", status="PENDING", raw={"id": "tx_card", "status": "PENDING"}
        )
        response = self._pay({"type": "CARD", "token": "tok_1"})
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["data"]["async_payment_url"])
        method = adapter.create_transaction.call_args[0][0].payment_method
        self.assertEqual(method, {"type": "CARD", "token": "tok_1", "installments": 1})


class PayPageTests(TestCase):
    def setUp(self):
        self.owner = User.objects.create_user(username="seller", email="seller@example.com", password="pass1234")

    @override_settings(WOMPI_PUBLIC_KEY="pub_test_page")
    @patch("links.services.get_adapter")
    def test_page_renders_when_reconcile_fails(self, mock_get_adapter):
        mock_get_adapter.return_value.get_link_status.side_effect = ProviderError("Wompi API error: 500")
        link = PaymentLink.objects.create(
            user=self.owner, provider="WOMPI", provider_link_id="test_W1", title="Taller", amount=10000,
            payment_methods=["CARD", "PSE"],
        )
        response = self.client.get(reverse("links:pay-page", args=[str(link.pk)]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.context["checkout_mode"], "checkout")
        self.assertTrue(response.context["offers_pse"])
        self.assertContains(response, "pub_test_page")
        self.assertContains(response, "$10,000")

    @patch("links.services.get_adapter")
    def test_lookup_by_provider_link_id(self, mock_get_adapter):
        link = PaymentLink.objects.create(
            user=self.owner, provider="BOLD", provider_link_id="LNK_PAGE", title="Curso", amount=50000,
            provider_url="https://checkout.bold.co/LNK_PAGE", status="PAID",
        )
        response = self.client.get(reverse("links:pay-page", args=["LNK_PAGE"]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.context["link"], link)
        self.assertEqual(response.context["checkout_mode"], "redirect")
        self.assertContains(response, "Pago recibido")
        mock_get_adapter.assert_not_called()

    def test_unknown_link(self):
        response = self.client.get(reverse("links:pay-page", args=["nope"]))
        self.assertEqual(response.status_code, 404)

    def test_callback_redirects_to_pay_page(self):
        link = PaymentLink.objects.create(
            user=self.owner, provider="WOMPI", title="Taller", amount=10000, transaction_id="tx_9", status="PROCESSING"
        )
        response = self.client.get(reverse("links:pay-callback"), {"id": "tx_9"})
        self.assertRedirects(response, reverse("links:pay-page", args=[str(link.pk)]))
