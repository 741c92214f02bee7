import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List

from .exceptions import ProviderError
from .providers import (
    CreatedLink,
    LinkParams,
    LinkStatusInfo,
    PaymentProviderAdapter,
    TransactionParams,
    TransactionResult,
)

logger = logging.getLogger(__name__)

CENTS_MULTIPLIER = 100
CHECKOUT_URL = "https://checkout.wompi.co/l/{link_id}"


def to_cents(amount) -> int:
    """Wompi expects every amount in cents."""
    return int(Decimal(str(amount)) * CENTS_MULTIPLIER)


def from_cents(amount_in_cents) -> Decimal:
    return Decimal(amount_in_cents) / CENTS_MULTIPLIER


def build_integrity_signature(reference: str, amount_in_cents: int, currency: str, secret: str) -> str:
    data = f"{reference}{amount_in_cents}{currency}{secret}"
    return hashlib.sha256(data.encode()).hexdigest()


@dataclass
class AcceptanceTokens:
    acceptance_token: str
    personal_data_token: str
    public_key: str


class WompiAdapter(PaymentProviderAdapter):
    """
    Wompi API.

    Merchant info and PSE institutions are public endpoints; payment links and
    transactions need the private key. Transactions must carry the two
    acceptance tokens published in the merchant info and an integrity
    signature.
    """

    provider = "WOMPI"
    display_name = "Wompi"

    @property
    def base_url(self) -> str:
        return self.config.wompi_api_url

    def _headers(self, authenticated: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.config.wompi_private_key}"
        return headers

    def normalize_error(self, body: Any, status_code: int) -> str:
        fallback = f"Wompi API error: {status_code}"
        if not isinstance(body, dict):
            return fallback

        error = body.get("error")
        if isinstance(error, dict):
            if error.get("message"):
                return str(error["message"])
            if error.get("reason"):
                return str(error["reason"])
        if body.get("message"):
            return str(body["message"])
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict) and isinstance(error.get("messages"), dict):
            details = []
            for name, messages in error["messages"].items():
                if isinstance(messages, list):
                    messages = ", ".join(str(message) for message in messages)
                details.append(f"{name}: {messages}")
            if details:
                return "; ".join(details)
        return fallback

    # Merchant / acceptance tokens

    def get_merchant_info(self) -> Dict[str, Any]:
        body = self._request("GET", f"/merchants/{self.config.wompi_public_key}", authenticated=False)
        return body.get("data") or {}

    def get_acceptance_tokens(self) -> AcceptanceTokens:
        merchant = self.get_merchant_info()
        try:
            return AcceptanceTokens(
                acceptance_token=merchant["presigned_acceptance"]["acceptance_token"],
                personal_data_token=merchant["presigned_personal_data_auth"]["acceptance_token"],
                public_key=self.config.wompi_public_key,
            )
        except (KeyError, TypeError):
            raise ProviderError("Wompi no devolvió los tokens de aceptación", provider=self.provider)

    def get_pse_institutions(self) -> List[Dict[str, str]]:
        body = self._request("GET", "/pse/financial_institutions", authenticated=False)
        return body.get("data") or []

    # Payment links

    def build_link_request(self, params: LinkParams) -> Dict[str, Any]:
        request = {
            "name": params.title,
            "description": params.description or params.title,
            "single_use": True,
            "collect_shipping": False,
            "currency": self.config.currency,
        }
        # Without amount_in_cents Wompi lets the payer type the amount
        if params.amount_type == "CLOSE":
            request["amount_in_cents"] = to_cents(params.amount)

        if params.expiration_date:
            request["expires_at"] = params.expiration_date.isoformat()

        if params.redirect_url:
            request["redirect_url"] = params.redirect_url

        if params.logo_url:
            request["image_url"] = params.logo_url

        return request

    def create_link(self, params: LinkParams) -> CreatedLink:
        body = self._request("POST", "/payment_links", json=self.build_link_request(params))
        data = body.get("data") or {}
        link_id = data.get("id")
        if not link_id:
            raise ProviderError("Wompi no devolvió el link de pago", provider=self.provider)
        url = data.get("url") or CHECKOUT_URL.format(link_id=link_id)
        logger.info(f"Wompi link created: {link_id}")
        return CreatedLink(provider_link_id=link_id, provider_url=url)

    def get_link_status(self, provider_link_id: str) -> LinkStatusInfo:
        """
        Wompi only exposes an ``active`` flag for links: an inactive link maps
        to EXPIRED, an active one carries no status information.
        """
        body = self._request("GET", f"/payment_links/{provider_link_id}")
        data = body.get("data") or {}
        active = data.get("active")
        amount_in_cents = data.get("amount_in_cents")
        return LinkStatusInfo(
            status="EXPIRED" if active is False else None,
            active=active,
            amount=from_cents(amount_in_cents) if amount_in_cents is not None else None,
            carries_transaction=False,
        )

    # Transactions

    def build_transaction_request(self, params: TransactionParams, tokens: AcceptanceTokens) -> Dict[str, Any]:
        amount_in_cents = to_cents(params.amount)
        request = {
            "amount_in_cents": amount_in_cents,
            "currency": self.config.currency,
            "customer_email": params.customer_email,
            "reference": params.reference,
            "acceptance_token": tokens.acceptance_token,
            "accept_personal_auth": tokens.personal_data_token,
            "payment_method": params.payment_method,
            "signature": build_integrity_signature(
                params.reference, amount_in_cents, self.config.currency, self.config.wompi_integrity_secret
            ),
        }
        if params.redirect_url:
            request["redirect_url"] = params.redirect_url
        return request

    def create_transaction(self, params: TransactionParams) -> TransactionResult:
        if params.acceptance_token and params.personal_data_token:
            tokens = AcceptanceTokens(
                acceptance_token=params.acceptance_token,
                personal_data_token=params.personal_data_token,
                public_key=self.config.wompi_public_key,
            )
        else:
            tokens = self.get_acceptance_tokens()

        body = self._request("POST", "/transactions", json=self.build_transaction_request(params, tokens))
        result = self._transaction_result(body)
        logger.info(f"Wompi transaction {result.transaction_id} created for {params.reference}: {result.status}")

        # PSE publishes the bank redirect asynchronously; look once more before giving up
        if params.payment_method.get("type") == "PSE" and not result.async_payment_url:
            try:
                result = self.get_transaction(result.transaction_id)
            except ProviderError as e:
                # The transaction exists either way; the payer reloads instead of redirecting
                logger.warning(f"Could not refetch PSE transaction {result.transaction_id}: {e}")
        return result

    def get_transaction(self, transaction_id: str) -> TransactionResult:
        body = self._request("GET", f"/transactions/{transaction_id}")
        return self._transaction_result(body)

    def _transaction_result(self, body: Dict[str, Any]) -> TransactionResult:
        data = body.get("data") or {}
        if not data.get("id"):
            raise ProviderError("Wompi no devolvió la transacción", provider=self.provider)
        extra = (data.get("payment_method") or {}).get("extra") or {}
        return TransactionResult(
            transaction_id=data["id"],
            status=data.get("status", ""),
            method_extra=extra,
            async_payment_url=extra.get("async_payment_url"),
            raw=data,
        )
