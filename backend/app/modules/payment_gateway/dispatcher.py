"""Callback dispatcher.

Turns an authenticated gateway callback into at most one ledger change:

1. verify through the owning gateway (failure -> REJECTED, nothing written)
2. resolve the order by external id (unknown -> ORDER_NOT_FOUND)
3. map gateway vocabulary to a target status (unmapped -> IGNORED)
4. a completion whose paid amount differs from the order is held back
   (AMOUNT_MISMATCH, order stays PENDING)
5. conditional update out of PENDING (lost race -> ALREADY_PROCESSED)
6. on PENDING -> COMPLETED only: extend the subscription in the same
   transaction, commit, then hand the confirmation to the notifier

Deliveries are at-least-once and may arrive concurrently; the conditional
update is the only serialization point.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import AsyncContextManager, Callable, Mapping, Optional

from app.core.logging import log_error, log_info, log_warning
from app.modules.payment_gateway.errors import SignatureInvalid
from app.modules.payment_gateway.interface import PaymentGatewayInterface, VerifiedEvent
from app.modules.payment_gateway.models import GatewayProvider, Order, OrderStatus
from app.modules.payment_gateway.notifications import PaymentConfirmation, PaymentNotifier
from app.modules.payment_gateway.repository import PaymentLedger
from app.modules.payment_gateway.state_machine import TransitionDecision, evaluate

logger = logging.getLogger(__name__)

# Used when an order references a plan that no longer exists
DEFAULT_DURATION_DAYS = 30

TELEBIRR_OUTCOMES: dict[str, OrderStatus] = {
    "Completed": OrderStatus.COMPLETED,
    "Failure": OrderStatus.FAILED,
    "Expired": OrderStatus.FAILED,
    "Canceled": OrderStatus.FAILED,
}

# Card declines (payment_intent.payment_failed) leave the session open for
# a retry; only session events are final
STRIPE_OUTCOMES: dict[str, OrderStatus] = {
    "checkout.session.completed": OrderStatus.COMPLETED,
    "checkout.session.async_payment_succeeded": OrderStatus.COMPLETED,
    "checkout.session.async_payment_failed": OrderStatus.FAILED,
    "checkout.session.expired": OrderStatus.CANCELLED,
}

OUTCOME_MAPS: dict[str, dict[str, OrderStatus]] = {
    GatewayProvider.TELEBIRR.value: TELEBIRR_OUTCOMES,
    GatewayProvider.STRIPE.value: STRIPE_OUTCOMES,
}


def map_outcome(gateway: str, outcome: str) -> Optional[OrderStatus]:
    """Map a gateway-specific outcome to a target order status.

    Returns None for outcomes that should not change the order, such as
    in-progress notifications.
    """
    return OUTCOME_MAPS.get(gateway, {}).get(outcome)


class DispatchOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    ORDER_NOT_FOUND = "order_not_found"
    IGNORED = "ignored"
    AMOUNT_MISMATCH = "amount_mismatch"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DispatchResult:
    outcome: DispatchOutcome
    order_id: Optional[uuid.UUID] = None
    status: Optional[OrderStatus] = None


class CallbackDispatcher:
    """Applies verified gateway callbacks to the order ledger."""

    def __init__(
        self,
        gateways: Mapping[str, PaymentGatewayInterface],
        ledger_scope: Callable[[], AsyncContextManager[PaymentLedger]],
        notifier: Optional[PaymentNotifier] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.gateways = gateways
        self.ledger_scope = ledger_scope
        self.notifier = notifier
        self.clock = clock

    async def dispatch(
        self,
        gateway: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> DispatchResult:
        """Verify and apply one callback delivery.

        Raises:
            ValueError: gateway is not configured
        """
        adapter = self.gateways.get(gateway)
        if adapter is None:
            raise ValueError(f"Unsupported gateway provider: {gateway}")

        try:
            event = adapter.verify_callback(raw_body, headers)
        except SignatureInvalid as e:
            log_warning(logger, "Rejected callback with invalid signature", gateway=gateway, reason=str(e))
            return DispatchResult(DispatchOutcome.REJECTED)

        return await self.apply(event)

    async def apply(self, event: VerifiedEvent) -> DispatchResult:
        """Apply an already verified event."""
        confirmation = None

        async with self.ledger_scope() as ledger:
            order = None
            if event.external_order_id:
                order = await ledger.orders.get_by_external_id(event.external_order_id)
            if order is None or order.gateway != event.gateway:
                log_warning(
                    logger,
                    "Callback for unknown order",
                    gateway=event.gateway,
                    external_order_id=event.external_order_id,
                    event_type=event.event_type,
                )
                return DispatchResult(DispatchOutcome.ORDER_NOT_FOUND)

            target = map_outcome(event.gateway, event.outcome)
            if target is None:
                log_info(
                    logger,
                    "Ignoring non-final callback",
                    order_id=str(order.id),
                    outcome=event.outcome,
                )
                return DispatchResult(DispatchOutcome.IGNORED, order.id, OrderStatus(order.status))

            if evaluate(OrderStatus(order.status), target) == TransitionDecision.NOOP:
                return DispatchResult(
                    DispatchOutcome.ALREADY_PROCESSED, order.id, OrderStatus(order.status)
                )

            if target == OrderStatus.COMPLETED and not _amount_matches(event, order):
                log_warning(
                    logger,
                    "Paid amount does not match order amount",
                    order_id=str(order.id),
                    gateway=event.gateway,
                    order_amount=str(order.amount),
                    paid_amount=str(event.amount),
                    external_tx_id=event.external_tx_id,
                )
                return DispatchResult(
                    DispatchOutcome.AMOUNT_MISMATCH, order.id, OrderStatus(order.status)
                )

            moved = await ledger.orders.transition_if_pending(
                order.id, target, external_tx_id=event.external_tx_id
            )
            if not moved:
                # Another delivery won the race between our read and update
                return DispatchResult(DispatchOutcome.ALREADY_PROCESSED, order.id)

            if target == OrderStatus.COMPLETED:
                confirmation = await self._activate_subscription(ledger, order)

            await ledger.commit()

        log_info(
            logger,
            "Order status updated from callback",
            order_id=str(order.id),
            status=target.value,
            external_tx_id=event.external_tx_id,
        )

        if confirmation is not None:
            self._notify(confirmation)

        return DispatchResult(DispatchOutcome.APPLIED, order.id, target)

    async def _activate_subscription(
        self,
        ledger: PaymentLedger,
        order: Order,
    ) -> PaymentConfirmation:
        plan = await ledger.plans.get_plan(order.plan_id)
        if plan is None:
            log_warning(
                logger,
                "Completed order references a missing plan",
                order_id=str(order.id),
                plan_id=str(order.plan_id),
            )
        duration_days = plan.duration_days if plan is not None else DEFAULT_DURATION_DAYS
        end_date = self.clock() + timedelta(days=duration_days)

        await ledger.subscriptions.upsert_extend(order.user_id, order.plan_id, end_date)

        return PaymentConfirmation(
            order_id=str(order.id),
            external_order_id=order.external_order_id,
            email=order.customer_email,
            amount=str(order.amount),
            currency=order.currency,
            plan_name=plan.name if plan is not None else "Subscription",
            end_date=end_date.isoformat(),
        )

    def _notify(self, confirmation: PaymentConfirmation) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.submit(confirmation)
        except Exception as e:
            log_error(
                logger,
                "Failed to hand off payment confirmation",
                e,
                order_id=confirmation.order_id,
            )


def _amount_matches(event: VerifiedEvent, order: Order) -> bool:
    # Callbacks without an amount are trusted on the signature alone
    if event.amount is None:
        return True
    return Decimal(event.amount) == Decimal(order.amount)
