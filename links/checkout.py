"""
Wompi checkout client.

Drives the same steps the browser checkout performs on ``/pay/<id>/``:
session tokens from our backend, PSE banks and card tokenization straight
against Wompi's public endpoints with the public key, then the transaction
through ``POST /api/pay/<id>``. Card data only ever goes to Wompi.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings

from .forms import CardPaymentForm, NequiPaymentForm, PSEPaymentForm

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("PAID", "EXPIRED")


class CheckoutError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CheckoutValidationError(CheckoutError):
    """Raised before any network call when the payer's fields are invalid."""

    def __init__(self, errors: Dict[str, List[str]]):
        self.errors = errors
        first = next((messages[0] for messages in errors.values() if messages), "Datos inválidos")
        super().__init__(first)


class LinkClosed(CheckoutError):
    """The link is PAID or EXPIRED; the checkout ends on a read-only screen."""

    def __init__(self, status: str, message: str = ""):
        super().__init__(message or f"Link {status}", status_code=400)
        self.status = status


@dataclass
class CheckoutSession:
    acceptance_token: str
    personal_data_token: str
    public_key: str


@dataclass
class CheckoutResult:
    transaction_id: str
    status: str
    async_payment_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def action(self) -> str:
        # PSE hands back a bank URL to follow; CARD and NEQUI wait for the webhook
        return "redirect" if self.async_payment_url else "reload"


class WompiCheckout:
    def __init__(
        self,
        backend_url: str,
        link_id: str,
        wompi_api_url: Optional[str] = None,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.backend_url = backend_url.rstrip("/")
        self.link_id = str(link_id)
        self.wompi_api_url = (wompi_api_url or settings.WOMPI_API_URL).rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        self.session: Optional[CheckoutSession] = None

    @property
    def pay_url(self) -> str:
        return f"{self.backend_url}/api/pay/{self.link_id}"

    # Steps 1-2

    def start(self) -> CheckoutSession:
        """Fetch the acceptance tokens and public key for this link."""
        data = self._backend("GET")
        self.session = CheckoutSession(
            acceptance_token=data["acceptanceToken"],
            personal_data_token=data["personalDataToken"],
            public_key=data["publicKey"],
        )
        return self.session

    def financial_institutions(self) -> List[Dict[str, str]]:
        body = self._wompi("GET", "/pse/financial_institutions")
        return body.get("data") or []

    # Steps 3-5

    def tokenize_card(self, number: str, exp_month: str, exp_year: str, cvc: str, card_holder: str) -> str:
        body = self._wompi(
            "POST",
            "/tokens/cards",
            json={
                "number": number,
                "exp_month": exp_month,
                "exp_year": exp_year,
                "cvc": cvc,
                "card_holder": card_holder,
            },
        )
        token = (body.get("data") or {}).get("id")
        if not token:
            raise CheckoutError("No se pudo tokenizar la tarjeta")
        return token

    def pay_with_card(self, amount: Optional[int] = None, **fields) -> CheckoutResult:
        cleaned = self._validate(CardPaymentForm, fields)
        token = self.tokenize_card(
            number=cleaned["number"],
            exp_month=cleaned["exp_month"],
            exp_year=cleaned["exp_year"],
            cvc=cleaned["cvc"],
            card_holder=cleaned["card_holder"],
        )
        method = {"type": "CARD", "token": token, "installments": cleaned.get("installments") or 1}
        return self._submit(method, cleaned["email"], amount)

    def pay_with_pse(self, amount: Optional[int] = None, **fields) -> CheckoutResult:
        cleaned = self._validate(PSEPaymentForm, fields)
        method = {
            "type": "PSE",
            "user_type": cleaned["user_type"],
            "user_legal_id_type": cleaned["user_legal_id_type"],
            "user_legal_id": cleaned["user_legal_id"],
            "financial_institution_code": cleaned["financial_institution_code"],
        }
        return self._submit(method, cleaned["email"], amount)

    def pay_with_nequi(self, amount: Optional[int] = None, **fields) -> CheckoutResult:
        cleaned = self._validate(NequiPaymentForm, fields)
        method = {"type": "NEQUI", "phone_number": cleaned["phone_number"]}
        return self._submit(method, cleaned["email"], amount)

    # Steps 6-7 happen on the backend; the result says where the payer goes next

    def _submit(self, method: Dict[str, Any], email: str, amount: Optional[int]) -> CheckoutResult:
        session = self._ensure_session()
        payload = {
            "paymentMethod": method,
            "customerEmail": email,
            "acceptanceToken": session.acceptance_token,
            "personalDataToken": session.personal_data_token,
        }
        if amount:
            payload["amount"] = amount

        body = self._backend("POST", json=payload)
        data = body.get("data") or {}
        result = CheckoutResult(
            transaction_id=data.get("id", ""),
            status=data.get("status", ""),
            async_payment_url=data.get("async_payment_url"),
            raw=data,
        )
        logger.info(f"Checkout for link {self.link_id} submitted {method['type']}: {result.status}, {result.action}")
        return result

    def _validate(self, form_class, fields: Dict[str, Any]) -> Dict[str, Any]:
        form = form_class(fields)
        if not form.is_valid():
            raise CheckoutValidationError({name: list(errors) for name, errors in form.errors.items()})
        return form.cleaned_data

    def _ensure_session(self) -> CheckoutSession:
        return self.session or self.start()

    def _backend(self, method: str, json: Optional[dict] = None) -> Dict[str, Any]:
        try:
            response = self.http.request(method, self.pay_url, json=json, timeout=self.timeout)
        except requests.RequestException as e:
            raise CheckoutError(f"No se pudo contactar el servidor: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.ok:
            return body

        status = body.get("status")
        message = body.get("error") or f"Error {response.status_code}"
        if status in TERMINAL_STATUSES:
            raise LinkClosed(status, message)
        raise CheckoutError(message, status_code=response.status_code)

    def _wompi(self, method: str, endpoint: str, json: Optional[dict] = None) -> Dict[str, Any]:
        session = self._ensure_session()
        headers = {
            "Authorization": f"Bearer {session.public_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self.http.request(
                method, f"{self.wompi_api_url}{endpoint}", json=json, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise CheckoutError(f"No se pudo contactar a Wompi: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not response.ok:
            error = body.get("error") if isinstance(body, dict) else None
            message = (error or {}).get("reason") if isinstance(error, dict) else None
            raise CheckoutError(message or f"Wompi API error: {response.status_code}", status_code=response.status_code)
        return body
