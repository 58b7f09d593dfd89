"""Payment service: gateway construction and checkout initiation.

Checkout always writes the PENDING order and commits it before the first
network call, so a callback can never arrive for an order the ledger has
not seen. A failed gateway call leaves that order PENDING for the sweeper.
"""

import logging
import uuid
from typing import Optional, Type

from app.core.config import Settings
from app.core.logging import log_error, log_info
from app.modules.payment_gateway.errors import GatewayError, GatewayRejected, OrderNotFound
from app.modules.payment_gateway.gateways import StripeGateway, TelebirrConfig, TelebirrGateway
from app.modules.payment_gateway.interface import (
    CheckoutMode,
    CheckoutRequest,
    CheckoutResult,
    CustomerInfo,
    PaymentGatewayInterface,
)
from app.modules.payment_gateway.models import GatewayProvider, Order
from app.modules.payment_gateway.repository import PaymentLedger
from app.modules.payment_gateway.signing import generate_nonce

logger = logging.getLogger(__name__)


class PaymentGatewayFactory:
    """Factory for creating payment gateway instances."""

    _gateways: dict[str, Type[PaymentGatewayInterface]] = {
        GatewayProvider.TELEBIRR.value: TelebirrGateway,
        GatewayProvider.STRIPE.value: StripeGateway,
    }

    @classmethod
    def create(cls, provider: str, config: Settings) -> PaymentGatewayInterface:
        """Create a gateway instance from settings.

        Raises:
            ValueError: If provider is not supported
        """
        if provider not in cls._gateways:
            raise ValueError(f"Unsupported gateway provider: {provider}")
        if provider == GatewayProvider.TELEBIRR.value:
            return TelebirrGateway(TelebirrConfig.from_settings(config))
        return StripeGateway.from_settings(config)

    @classmethod
    def get_supported_providers(cls) -> list[str]:
        return list(cls._gateways.keys())

    @classmethod
    def create_configured(cls, config: Settings) -> dict[str, PaymentGatewayInterface]:
        """Create every gateway that has credentials configured."""
        gateways: dict[str, PaymentGatewayInterface] = {}
        if config.TELEBIRR_PRIVATE_KEY:
            gateways[GatewayProvider.TELEBIRR.value] = cls.create(
                GatewayProvider.TELEBIRR.value, config
            )
        if config.STRIPE_SECRET_KEY or config.STRIPE_WEBHOOK_SECRET:
            gateways[GatewayProvider.STRIPE.value] = cls.create(
                GatewayProvider.STRIPE.value, config
            )
        return gateways


class CheckoutService:
    """Creates orders and starts gateway checkouts."""

    def __init__(
        self,
        ledger: PaymentLedger,
        gateways: dict[str, PaymentGatewayInterface],
        config: Settings,
    ):
        self.ledger = ledger
        self.gateways = gateways
        self.config = config

    def _gateway(self, provider: str) -> PaymentGatewayInterface:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ValueError(f"Gateway not available: {provider}")
        return gateway

    def _return_urls(self, external_order_id: str) -> tuple[str, str]:
        base = self.config.FRONTEND_URL.rstrip("/")
        return (
            f"{base}{self.config.CHECKOUT_RETURN_PATH}?order_id={external_order_id}",
            f"{base}{self.config.CHECKOUT_CANCEL_PATH}?order_id={external_order_id}",
        )

    async def create_checkout(
        self,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        provider: str,
        mode: CheckoutMode = CheckoutMode.HOSTED,
        customer_email: Optional[str] = None,
    ) -> tuple[Order, CheckoutResult]:
        """Create a PENDING order and a gateway checkout for it.

        Raises:
            ValueError: unknown gateway, or plan missing or inactive
            GatewayRejected: the gateway refused, or cannot do this mode
            GatewayUnavailable: the gateway could not be reached
        """
        gateway = self._gateway(provider)
        if not gateway.supports_mode(mode):
            raise GatewayRejected(
                f"{provider} does not support {mode.value} checkout", provider=provider
            )

        plan = await self.ledger.plans.get_plan(plan_id)
        if plan is None or not plan.is_active:
            raise ValueError(f"Plan not found: {plan_id}")

        currency = (
            self.config.TELEBIRR_CURRENCY
            if provider == GatewayProvider.TELEBIRR.value
            else plan.currency
        )
        order = await self.ledger.orders.create_order(
            external_order_id=generate_nonce(),
            user_id=user_id,
            plan_id=plan.id,
            amount=plan.price,
            currency=currency,
            gateway=provider,
            customer_email=customer_email,
        )
        await self.ledger.commit()

        return_url, cancel_url = self._return_urls(order.external_order_id)
        request = CheckoutRequest(
            order_id=order.external_order_id,
            amount=plan.price,
            currency=currency,
            return_url=return_url,
            cancel_url=cancel_url,
            description=plan.name,
            customer=CustomerInfo(email=customer_email),
            mode=mode,
            metadata={"user_id": str(user_id), "plan_id": str(plan.id)},
        )

        try:
            result = await gateway.create_checkout(request)
        except GatewayError as e:
            log_error(
                logger,
                "Checkout creation failed",
                e,
                order_id=str(order.id),
                gateway=provider,
            )
            raise

        await self.ledger.orders.set_gateway_session(order.id, result.session_id)
        await self.ledger.commit()

        log_info(
            logger,
            "Checkout created",
            order_id=str(order.id),
            gateway=provider,
            mode=result.mode.value,
        )
        return order, result

    async def get_order_status(self, user_id: uuid.UUID, external_order_id: str) -> Order:
        """Get one of the user's orders.

        Raises:
            OrderNotFound: no such order for this user
        """
        order = await self.ledger.orders.get_by_external_id(external_order_id)
        if order is None or order.user_id != user_id:
            raise OrderNotFound(f"Order not found: {external_order_id}")
        return order

    async def list_history(
        self,
        user_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Order]:
        return await self.ledger.orders.list_user_orders(user_id, limit=limit, offset=offset)
