"""Stripe payment gateway implementation.

Checkout Sessions in two flavours, picked by the caller:
- hosted: redirect the customer to ``session.url``
- embedded: confirm in-page with ``session.client_secret``

Webhooks are authenticated with Stripe's own signature primitive.
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Mapping, Optional

import stripe

from app.core.config import Settings
from app.modules.payment_gateway.errors import (
    GatewayProtocolError,
    GatewayRejected,
    GatewayUnavailable,
    SignatureInvalid,
)
from app.modules.payment_gateway.interface import (
    CheckoutMode,
    CheckoutRequest,
    CheckoutResult,
    EmbeddedCheckout,
    PaymentGatewayInterface,
    RedirectCheckout,
    VerifiedEvent,
)
from app.modules.payment_gateway.models import GatewayProvider

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

# Checkout session completed but the payment method settles later
SESSION_AWAITING_PAYMENT = "checkout.session.awaiting_payment"

# Zero-decimal currencies are sent to Stripe as whole units
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to Stripe's integer representation."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int((amount * 100).quantize(Decimal("1")))


def from_minor_units(value: Optional[int], currency: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    if currency and currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(value)
    return Decimal(value) / 100


class StripeGateway(PaymentGatewayInterface):
    """Stripe Checkout gateway."""

    provider = GatewayProvider.STRIPE.value
    supported_modes = frozenset({CheckoutMode.HOSTED, CheckoutMode.EMBEDDED})

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        max_network_retries: int = 2,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.max_network_retries = max_network_retries
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        """Per-gateway SDK client; retries are handled by the SDK."""
        if self._client is None:
            self._client = stripe.StripeClient(
                self.api_key,
                max_network_retries=self.max_network_retries,
            )
        return self._client

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        )

    def build_session_params(self, request: CheckoutRequest) -> dict[str, Any]:
        """Build Checkout Session parameters for a request."""
        metadata = {**(request.metadata or {}), "order_id": request.order_id}
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": request.currency.lower(),
                    "product_data": {"name": request.description or "Subscription"},
                    "unit_amount": to_minor_units(request.amount, request.currency),
                },
                "quantity": 1,
            }],
            "client_reference_id": request.order_id,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if request.customer.email:
            params["customer_email"] = request.customer.email

        if request.mode == CheckoutMode.EMBEDDED:
            params["ui_mode"] = "embedded"
            params["return_url"] = request.return_url
        else:
            params["success_url"] = request.return_url
            params["cancel_url"] = request.cancel_url
        return params

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """Create a Stripe Checkout Session.

        Args:
            request: Checkout data

        Returns:
            RedirectCheckout for hosted mode, EmbeddedCheckout for embedded mode
        """
        if not self.api_key:
            raise GatewayRejected(
                "Stripe credentials not configured", provider=self.provider
            )
        if not self.supports_mode(request.mode):
            raise GatewayRejected(
                f"Stripe does not support {request.mode.value} checkout",
                provider=self.provider,
            )

        params = self.build_session_params(request)
        try:
            # The SDK is synchronous; keep it off the event loop
            session = await asyncio.to_thread(
                self.client.checkout.sessions.create,
                params=params,
                options={"idempotency_key": f"checkout-{request.order_id}"},
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise GatewayUnavailable(
                f"Stripe unreachable: {e}", provider=self.provider
            ) from e
        except (
            stripe.InvalidRequestError,
            stripe.AuthenticationError,
            stripe.PermissionError,
            stripe.CardError,
            stripe.IdempotencyError,
        ) as e:
            raise GatewayRejected(
                getattr(e, "user_message", None) or str(e),
                status_code=getattr(e, "http_status", None),
                provider=self.provider,
            ) from e
        except stripe.StripeError as e:
            raise GatewayUnavailable(
                f"Stripe error: {e}", provider=self.provider
            ) from e

        session_id = getattr(session, "id", None)
        if not session_id:
            raise GatewayProtocolError(
                "Stripe returned a session without an id",
                raw_body=str(session),
                provider=self.provider,
            )

        if request.mode == CheckoutMode.EMBEDDED:
            client_secret = getattr(session, "client_secret", None)
            if not client_secret:
                raise GatewayProtocolError(
                    "Stripe embedded session has no client_secret",
                    raw_body=str(session),
                    provider=self.provider,
                )
            return EmbeddedCheckout(session_id=session_id, client_secret=client_secret)

        checkout_url = getattr(session, "url", None)
        if not checkout_url:
            raise GatewayProtocolError(
                "Stripe hosted session has no url",
                raw_body=str(session),
                provider=self.provider,
            )
        return RedirectCheckout(session_id=session_id, checkout_url=checkout_url)

    def verify_callback(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> VerifiedEvent:
        """Verify a Stripe webhook delivery and extract the outcome."""
        if not self.webhook_secret:
            raise SignatureInvalid("Stripe webhook secret is not configured")

        signature = None
        for name, value in headers.items():
            if name.lower() == SIGNATURE_HEADER:
                signature = value
                break
        if not signature:
            raise SignatureInvalid("Missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            event = json.loads(payload)
        except Exception as e:
            raise SignatureInvalid(f"Stripe webhook verification failed: {e}") from e

        return self._event_from_payload(event)

    def _event_from_payload(self, event: dict) -> VerifiedEvent:
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if obj.get("object") == "payment_intent":
            external_tx_id = obj.get("id")
            amount = from_minor_units(obj.get("amount"), obj.get("currency"))
        else:
            external_tx_id = obj.get("payment_intent")
            amount = from_minor_units(obj.get("amount_total"), obj.get("currency"))

        outcome = event_type
        if (
            event_type == "checkout.session.completed"
            and obj.get("payment_status") not in ("paid", "no_payment_required")
        ):
            outcome = SESSION_AWAITING_PAYMENT

        return VerifiedEvent(
            gateway=self.provider,
            external_order_id=obj.get("client_reference_id") or metadata.get("order_id"),
            outcome=outcome,
            external_tx_id=external_tx_id,
            event_type=event_type,
            amount=amount,
        )
