import logging
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict

from .exceptions import ProviderError
from .providers import CreatedLink, LinkParams, LinkStatusInfo, PaymentProviderAdapter

logger = logging.getLogger(__name__)

NANOSECONDS_PER_MILLISECOND = 1_000_000


def to_nanoseconds(value: datetime) -> int:
    """Bold expects expiration dates as nanosecond epoch timestamps."""
    return int(value.timestamp() * 1000) * NANOSECONDS_PER_MILLISECOND


def from_nanoseconds(value: int) -> datetime:
    return datetime.fromtimestamp(value // NANOSECONDS_PER_MILLISECOND / 1000, tz=dt_timezone.utc)


class BoldAdapter(PaymentProviderAdapter):
    """
    Bold payment links API.

    Amounts travel in whole pesos. Bold answers domain failures with HTTP 200
    and a non-empty ``errors`` array, so every response is checked for it.
    """

    provider = "BOLD"
    display_name = "Bold"

    LINKS_ENDPOINT = "/online/link/v1"
    LINK_STATUSES = ("ACTIVE", "PROCESSING", "PAID", "EXPIRED")

    @property
    def base_url(self) -> str:
        return self.config.bold_api_url

    def _headers(self, authenticated: bool) -> Dict[str, str]:
        return {
            "Authorization": f"x-api-key {self.config.bold_api_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, endpoint: str, json: dict = None) -> Dict[str, Any]:
        body = self._request(method, endpoint, json=json)
        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            message = ", ".join(str(error) for error in errors)
            logger.error(f"Bold API returned errors for {method} {endpoint}: {message}")
            raise ProviderError(message, provider=self.provider)
        return body

    def build_link_request(self, params: LinkParams) -> Dict[str, Any]:
        request = {"amount_type": params.amount_type}

        if params.amount_type == "CLOSE" and params.amount > 0:
            request["amount"] = {
                "currency": self.config.currency,
                "total_amount": params.amount,
            }

        if params.description:
            request["description"] = params.description[:100]

        if params.expiration_date:
            request["expiration_date"] = to_nanoseconds(params.expiration_date)

        if params.logo_url:
            request["image_url"] = params.logo_url

        if params.callback_url:
            request["callback_url"] = params.callback_url

        if params.payment_methods:
            request["payment_methods"] = list(params.payment_methods)

        if params.payer_email:
            request["payer_email"] = params.payer_email

        return request

    def create_link(self, params: LinkParams) -> CreatedLink:
        body = self._call("POST", self.LINKS_ENDPOINT, json=self.build_link_request(params))
        payload = body.get("payload") or {}
        link_id = payload.get("payment_link")
        url = payload.get("url")
        if not (link_id and url):
            raise ProviderError("Bold no devolvió el link de pago", provider=self.provider)
        logger.info(f"Bold link created: {link_id}")
        return CreatedLink(provider_link_id=link_id, provider_url=url)

    def get_link_status(self, provider_link_id: str) -> LinkStatusInfo:
        body = self._call("GET", f"{self.LINKS_ENDPOINT}/{provider_link_id}")
        status = body.get("status")
        if status not in self.LINK_STATUSES:
            logger.warning(f"Bold returned unknown status {status!r} for link {provider_link_id}")
            status = None
        return LinkStatusInfo(
            status=status,
            active=status == "ACTIVE",
            transaction_id=body.get("transaction_id"),
            payment_method=body.get("payment_method"),
            amount=body.get("total"),
            carries_transaction=True,
        )

    def get_payment_methods(self) -> Dict[str, Any]:
        body = self._call("GET", f"{self.LINKS_ENDPOINT}/payment_methods")
        return body.get("payload") or {}
