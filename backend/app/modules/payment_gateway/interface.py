"""Payment Gateway Interface - Abstract base class for all gateway implementations.

Every provider exposes the same two capabilities, so checkout initiation
and the callback dispatcher treat all gateways uniformly:

- create_checkout: register the order with the provider and return a
  checkout descriptor for the caller
- verify_callback: authenticate an inbound delivery and extract the outcome
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional, Union


class CheckoutMode(str, Enum):
    """How the customer completes payment."""
    HOSTED = "hosted"  # redirect to a provider-hosted page
    EMBEDDED = "embedded"  # confirm in-page with a client secret


@dataclass
class CustomerInfo:
    """Customer details forwarded to the gateway."""
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class CheckoutRequest:
    """Data transfer object for creating a checkout."""
    order_id: str  # merchant-visible external order id
    amount: Decimal
    currency: str
    return_url: str
    cancel_url: str
    description: str = ""
    customer: CustomerInfo = field(default_factory=CustomerInfo)
    mode: CheckoutMode = CheckoutMode.HOSTED
    metadata: Optional[dict] = None


@dataclass(frozen=True)
class RedirectCheckout:
    """Hosted checkout: send the customer to checkout_url."""
    session_id: str
    checkout_url: str

    @property
    def mode(self) -> CheckoutMode:
        return CheckoutMode.HOSTED


@dataclass(frozen=True)
class EmbeddedCheckout:
    """Embedded checkout: confirm in-page with client_secret."""
    session_id: str
    client_secret: str

    @property
    def mode(self) -> CheckoutMode:
        return CheckoutMode.EMBEDDED


CheckoutResult = Union[RedirectCheckout, EmbeddedCheckout]


@dataclass(frozen=True)
class VerifiedEvent:
    """An authenticated callback, still in the gateway's own vocabulary."""
    gateway: str
    external_order_id: Optional[str]
    outcome: str
    external_tx_id: Optional[str] = None
    event_type: Optional[str] = None
    amount: Optional[Decimal] = None


class PaymentGatewayInterface(ABC):
    """Abstract interface for all payment gateway implementations.

    Implementations only perform outbound network calls and local
    cryptography; they hold no shared mutable state.
    """

    provider: str = ""
    supported_modes: frozenset[CheckoutMode] = frozenset({CheckoutMode.HOSTED})

    def supports_mode(self, mode: CheckoutMode) -> bool:
        return mode in self.supported_modes

    @abstractmethod
    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """Create a checkout for an order.

        Raises:
            GatewayUnavailable: network failure or timeout
            GatewayRejected: the provider refused the request
            GatewayProtocolError: the provider response was malformed
        """

    @abstractmethod
    def verify_callback(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> VerifiedEvent:
        """Authenticate a callback delivery.

        Must fail closed: any error while verifying raises SignatureInvalid.
        """
