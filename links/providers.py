"""
Provider-agnostic contract for the payment gateways.

Every gateway is wrapped by a ``PaymentProviderAdapter`` subclass that turns
the three uniform intents (create a link, read a link's status, create a
transaction) into that gateway's REST calls. Callers never see
provider-specific field names: they get the dataclasses below or a
``ProviderError`` carrying a human-readable reason.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional

import requests

from .config import ProviderSettings, get_provider_settings
from .exceptions import ProviderError, ProviderRateLimited, ProviderTimeout, ProviderUnsupported

logger = logging.getLogger(__name__)


@dataclass
class LinkParams:
    title: str
    amount: int
    amount_type: str = "CLOSE"
    description: str = ""
    expiration_date: Optional[datetime] = None
    logo_url: str = ""
    callback_url: str = ""
    redirect_url: str = ""
    payment_methods: List[str] = field(default_factory=list)
    payer_email: str = ""


@dataclass
class CreatedLink:
    provider_link_id: str
    provider_url: str


@dataclass
class LinkStatusInfo:
    """
    What a provider can tell us about a link when polled.

    ``status`` is None when the provider response does not allow deriving a
    status. ``carries_transaction`` says whether ``transaction_id`` and
    ``payment_method`` are meaningful and may overwrite the stored values.
    """

    status: Optional[str]
    active: Optional[bool] = None
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[int] = None
    carries_transaction: bool = False


@dataclass
class TransactionParams:
    amount: int
    customer_email: str
    reference: str
    payment_method: Dict[str, Any]
    acceptance_token: str = ""
    personal_data_token: str = ""
    redirect_url: str = ""


@dataclass
class TransactionResult:
    transaction_id: str
    status: str
    method_extra: Dict[str, Any] = field(default_factory=dict)
    async_payment_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class RateLimiter:
    """
    Sliding one-minute window of outbound calls for a single provider.

    Calls over the limit fail immediately with ``ProviderRateLimited`` rather
    than sleeping inside a user-facing request.
    """

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.request_history = deque()
        self.lock = Lock()

    def acquire(self, provider: str) -> None:
        if self.requests_per_minute <= 0:
            return
        with self.lock:
            now = time.monotonic()
            one_minute_ago = now - 60
            while self.request_history and self.request_history[0] < one_minute_ago:
                self.request_history.popleft()
            if len(self.request_history) >= self.requests_per_minute:
                logger.warning(f"{provider} rate limit reached ({self.requests_per_minute} req/min)")
                raise ProviderRateLimited(
                    f"Demasiadas solicitudes a {provider}, intenta de nuevo en un momento",
                    provider=provider,
                )
            self.request_history.append(now)


_limiters: Dict[str, RateLimiter] = {}
_limiters_lock = Lock()


def get_rate_limiter(provider: str, requests_per_minute: int) -> RateLimiter:
    with _limiters_lock:
        limiter = _limiters.get(provider)
        if limiter is None or limiter.requests_per_minute != requests_per_minute:
            limiter = _limiters[provider] = RateLimiter(requests_per_minute)
        return limiter


class PaymentProviderAdapter:
    """Base class for the gateway adapters."""

    provider = ""
    display_name = ""

    def __init__(self, config: Optional[ProviderSettings] = None):
        self.config = config or get_provider_settings()
        self.limiter = get_rate_limiter(self.provider, self.config.rate_limit_per_minute)

    @property
    def base_url(self) -> str:
        raise NotImplementedError

    def create_link(self, params: LinkParams) -> CreatedLink:
        raise NotImplementedError

    def get_link_status(self, provider_link_id: str) -> LinkStatusInfo:
        raise NotImplementedError

    def create_transaction(self, params: TransactionParams) -> TransactionResult:
        raise ProviderUnsupported(
            f"{self.display_name} no permite crear transacciones directas", provider=self.provider
        )

    def normalize_error(self, body: Any, status_code: int) -> str:
        return f"{self.display_name} API error: {status_code}"

    def _headers(self, authenticated: bool) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _request(self, method: str, endpoint: str, *, json: Optional[dict] = None,
                 authenticated: bool = True, headers: Optional[Dict[str, str]] = None) -> Any:
        """
        Perform one call against the provider and return the decoded JSON body.

        Raises ``ProviderTimeout`` when the call exceeds the configured timeout
        and ``ProviderError`` for any other transport failure or non-2xx answer.
        """
        self.limiter.acquire(self.provider)
        url = f"{self.base_url}{endpoint}"
        logger.info(f"{self.display_name} API request: {method} {endpoint}")

        request_headers = self._headers(authenticated)
        if headers:
            request_headers.update(headers)

        try:
            response = requests.request(
                method,
                url,
                headers=request_headers,
                json=json,
                timeout=self.config.timeout,
            )
        except requests.Timeout:
            logger.error(f"{self.display_name} API timeout after {self.config.timeout}s: {method} {endpoint}")
            raise ProviderTimeout(
                f"{self.display_name} no respondió a tiempo, intenta de nuevo", provider=self.provider
            )
        except requests.RequestException as e:
            logger.error(f"{self.display_name} API unreachable: {e}")
            raise ProviderError(f"{self.display_name} API error: unreachable", provider=self.provider)

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.ok:
            logger.error(f"{self.display_name} API error {response.status_code}: {body or response.text}")
            raise ProviderError(
                self.normalize_error(body, response.status_code),
                provider=self.provider,
                status_code=response.status_code,
            )

        if body is None:
            raise ProviderError(
                f"{self.display_name} API error: invalid response", provider=self.provider,
                status_code=response.status_code,
            )
        return body


def get_adapter(provider: str, config: Optional[ProviderSettings] = None) -> PaymentProviderAdapter:
    """Return the adapter for a stored ``PaymentLink.provider`` value."""
    from .bold import BoldAdapter
    from .wompi import WompiAdapter

    adapters = {
        BoldAdapter.provider: BoldAdapter,
        WompiAdapter.provider: WompiAdapter,
    }
    try:
        adapter_class = adapters[provider]
    except KeyError:
        raise ValueError(f"Unknown payment provider: {provider}")
    return adapter_class(config)
