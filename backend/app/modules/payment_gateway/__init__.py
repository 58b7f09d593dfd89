"""Payment Gateway Module.

Order ledger, Telebirr and Stripe gateways, callback dispatch and the
expiry sweeper.
"""

from app.modules.payment_gateway.models import (
    GatewayProvider,
    Order,
    OrderStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
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
from app.modules.payment_gateway.dispatcher import (
    CallbackDispatcher,
    DispatchOutcome,
    DispatchResult,
)
from app.modules.payment_gateway.service import CheckoutService, PaymentGatewayFactory
from app.modules.payment_gateway.sweeper import OrderExpirySweeper, configure_sweeper
from app.modules.payment_gateway.gateways import StripeGateway, TelebirrGateway

__all__ = [
    # Models
    "GatewayProvider",
    "Order",
    "OrderStatus",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    # Interface
    "CheckoutMode",
    "CheckoutRequest",
    "CheckoutResult",
    "EmbeddedCheckout",
    "PaymentGatewayInterface",
    "RedirectCheckout",
    "VerifiedEvent",
    # Dispatch
    "CallbackDispatcher",
    "DispatchOutcome",
    "DispatchResult",
    # Services
    "CheckoutService",
    "PaymentGatewayFactory",
    "OrderExpirySweeper",
    "configure_sweeper",
    # Gateways
    "StripeGateway",
    "TelebirrGateway",
]
