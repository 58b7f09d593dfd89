"""Repository for payment ledger data access.

Status changes are conditional updates; the affected row count is the
compare-and-set result, so concurrent writers never both win.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from app.modules.payment_gateway.models import (
    Order,
    OrderStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)


class OrderRepository:
    """Repository for order operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_order(
        self,
        external_order_id: str,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        amount,
        currency: str,
        gateway: str,
        customer_email: Optional[str] = None,
    ) -> Order:
        """Insert a new PENDING order."""
        order = Order(
            external_order_id=external_order_id,
            user_id=user_id,
            plan_id=plan_id,
            amount=amount,
            currency=currency,
            gateway=gateway,
            status=OrderStatus.PENDING.value,
            customer_email=customer_email,
        )
        self.session.add(order)
        await self.session.flush()
        await self.session.refresh(order)
        return order

    async def get_by_external_id(self, external_order_id: str) -> Optional[Order]:
        """Get order by the id the gateway knows it by."""
        result = await self.session.execute(
            select(Order).where(Order.external_order_id == external_order_id)
        )
        return result.scalar_one_or_none()

    async def list_user_orders(
        self,
        user_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Order]:
        """Get a user's orders, newest first."""
        result = await self.session.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def set_gateway_session(self, order_id: uuid.UUID, session_id: str) -> None:
        """Record the gateway's checkout session id."""
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(gateway_session_id=session_id, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )

    async def transition_if_pending(
        self,
        order_id: uuid.UUID,
        status: OrderStatus,
        external_tx_id: Optional[str] = None,
    ) -> bool:
        """Move an order out of PENDING.

        Returns:
            True if this call performed the transition, False if the order
            was no longer pending.
        """
        values = {"status": status.value, "updated_at": func.now()}
        if external_tx_id:
            values["external_transaction_id"] = external_tx_id
        if status == OrderStatus.COMPLETED:
            values["completed_at"] = func.now()

        result = await self.session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def fail_stale_pending(self, cutoff: datetime) -> int:
        """Fail every PENDING order created before cutoff.

        Returns:
            Number of orders updated
        """
        result = await self.session.execute(
            update(Order)
            .where(
                Order.status == OrderStatus.PENDING.value,
                Order.created_at < cutoff,
            )
            .values(status=OrderStatus.FAILED.value, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_extend(
        self,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        end_date: datetime,
    ) -> None:
        """Create the user's subscription or extend the existing one.

        A single INSERT ... ON CONFLICT (user_id) DO UPDATE, so two
        activations for one user cannot race into duplicate rows.
        """
        stmt = insert(Subscription).values(
            id=uuid.uuid4(),
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            end_date=end_date,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.user_id],
            set_={
                "plan_id": stmt.excluded.plan_id,
                "status": SubscriptionStatus.ACTIVE.value,
                "end_date": stmt.excluded.end_date,
                "updated_at": func.now(),
            },
        )
        await self.session.execute(stmt)


class PlanRepository:
    """Repository for subscription plan lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_plan(self, plan_id: uuid.UUID) -> Optional[SubscriptionPlan]:
        result = await self.session.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id)
        )
        return result.scalar_one_or_none()


class PaymentLedger:
    """One transaction's view of the ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.orders = OrderRepository(session)
        self.subscriptions = SubscriptionRepository(session)
        self.plans = PlanRepository(session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()


def ledger_factory(
    session_maker: Callable[[], AsyncSession],
) -> Callable[[], AsyncContextManager[PaymentLedger]]:
    """Build a factory of transaction-scoped ledgers.

    Each scope opens its own session; leaving it with an exception rolls back.
    """

    @asynccontextmanager
    async def scope() -> AsyncIterator[PaymentLedger]:
        async with session_maker() as session:
            ledger = PaymentLedger(session)
            try:
                yield ledger
            except Exception:
                await ledger.rollback()
                raise

    return scope
