from typing import Optional


class PaymentLinkError(Exception):
    """Base class for payment link errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProviderError(PaymentLinkError):
    """
    A provider call failed.

    Covers both transport failures (unreachable, non-2xx) and domain failures
    reported inside a successful response. ``message`` is always the
    normalized, human-readable reason.
    """

    retryable = False

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    retryable = True


class ProviderRateLimited(ProviderError):
    retryable = True


class ProviderUnsupported(ProviderError):
    pass


class BusinessRuleError(PaymentLinkError):
    """A request that breaks a payment link rule (400-class)."""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status
