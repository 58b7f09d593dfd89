"""Payment error taxonomy.

Checkout errors surface to the caller; callback errors are absorbed by the
dispatcher, except SignatureInvalid which is rejected explicitly.
"""

from typing import Optional


class PaymentError(Exception):
    """Base class for payment reconciliation errors."""


class GatewayError(PaymentError):
    """An outbound call to a payment gateway did not produce a checkout."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or provider-side 5xx. Retryable."""


class GatewayProtocolError(GatewayUnavailable):
    """The provider answered with a body we could not decode or use.

    Carries the raw body so it can be logged for diagnostics.
    """

    def __init__(
        self,
        message: str,
        raw_body: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, provider=provider)
        self.raw_body = raw_body


class GatewayRejected(GatewayError):
    """The provider refused the request (4xx)."""

    def __init__(
        self,
        reason: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(reason, provider=provider)
        self.reason = reason
        self.status_code = status_code


class SignatureInvalid(PaymentError):
    """A callback failed signature verification."""


class CanonicalizationError(PaymentError):
    """A payload could not be reduced to a unique signing string."""


class OrderNotFound(PaymentError):
    """No order matches the given identifier."""


class InvalidTransition(PaymentError):
    """The requested status change is not part of the order lifecycle."""


class NotificationFailure(PaymentError):
    """A payment confirmation could not be handed off or delivered."""
