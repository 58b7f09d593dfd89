"""Shared fixtures: RSA key material and an in-memory payment ledger."""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app.modules.payment_gateway.models import (
    Order,
    OrderStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)


def _generate_keypair() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture(scope="session")
def merchant_keys() -> tuple[str, str]:
    """Key pair the merchant signs requests with."""
    return _generate_keypair()


@pytest.fixture(scope="session")
def provider_keys() -> tuple[str, str]:
    """Key pair the provider signs notifications with."""
    return _generate_keypair()


class InMemoryOrders:
    """Order repository over a dict, with the same compare-and-set contract."""

    def __init__(self, store: "InMemoryLedgerStore"):
        self.store = store

    async def create_order(self, external_order_id, user_id, plan_id, amount, currency,
                           gateway, customer_email=None) -> Order:
        order = Order(
            id=uuid.uuid4(),
            external_order_id=external_order_id,
            user_id=user_id,
            plan_id=plan_id,
            amount=amount,
            currency=currency,
            gateway=gateway,
            status=OrderStatus.PENDING.value,
            customer_email=customer_email,
            created_at=self.store.now(),
        )
        self.store.orders[order.id] = order
        return order

    async def get_by_external_id(self, external_order_id):
        # Yield so concurrent dispatches interleave between read and update
        await asyncio.sleep(0)
        for order in self.store.orders.values():
            if order.external_order_id == external_order_id:
                return order
        return None

    async def list_user_orders(self, user_id, limit=20, offset=0):
        orders = sorted(
            (o for o in self.store.orders.values() if o.user_id == user_id),
            key=lambda o: o.created_at,
            reverse=True,
        )
        return orders[offset:offset + limit]

    async def set_gateway_session(self, order_id, session_id):
        self.store.orders[order_id].gateway_session_id = session_id

    async def transition_if_pending(self, order_id, status, external_tx_id=None) -> bool:
        async with self.store.lock:
            order = self.store.orders.get(order_id)
            if order is None or order.status != OrderStatus.PENDING.value:
                return False
            order.status = status.value
            if external_tx_id:
                order.external_transaction_id = external_tx_id
            if status == OrderStatus.COMPLETED:
                order.completed_at = self.store.now()
            return True

    async def fail_stale_pending(self, cutoff) -> int:
        async with self.store.lock:
            count = 0
            for order in self.store.orders.values():
                if order.status == OrderStatus.PENDING.value and order.created_at < cutoff:
                    order.status = OrderStatus.FAILED.value
                    count += 1
            return count


class InMemorySubscriptions:
    def __init__(self, store: "InMemoryLedgerStore"):
        self.store = store

    async def upsert_extend(self, user_id, plan_id, end_date):
        self.store.upsert_calls += 1
        self.store.subscriptions[user_id] = Subscription(
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            end_date=end_date,
        )


class InMemoryPlans:
    def __init__(self, store: "InMemoryLedgerStore"):
        self.store = store

    async def get_plan(self, plan_id):
        return self.store.plans.get(plan_id)


class InMemoryLedger:
    def __init__(self, store: "InMemoryLedgerStore"):
        self.orders = InMemoryOrders(store)
        self.subscriptions = InMemorySubscriptions(store)
        self.plans = InMemoryPlans(store)
        self.store = store

    async def commit(self):
        self.store.commits += 1

    async def rollback(self):
        self.store.rollbacks += 1


class InMemoryLedgerStore:
    """Backing state shared by every ledger scope of one test."""

    def __init__(self):
        self.orders: dict[uuid.UUID, Order] = {}
        self.subscriptions: dict[uuid.UUID, Subscription] = {}
        self.plans: dict[uuid.UUID, SubscriptionPlan] = {}
        self.lock = asyncio.Lock()
        self.commits = 0
        self.rollbacks = 0
        self.upsert_calls = 0
        self.clock = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.clock

    def ledger(self) -> InMemoryLedger:
        return InMemoryLedger(self)

    @asynccontextmanager
    async def scope(self):
        ledger = InMemoryLedger(self)
        try:
            yield ledger
        except Exception:
            await ledger.rollback()
            raise

    def add_plan(
        self,
        price: Decimal = Decimal("500.00"),
        currency: str = "ETB",
        duration_days: int = 30,
        is_active: bool = True,
        name: str = "Basic",
    ) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            id=uuid.uuid4(),
            name=name,
            price=price,
            currency=currency,
            duration_days=duration_days,
            is_active=is_active,
        )
        self.plans[plan.id] = plan
        return plan

    def add_order(
        self,
        gateway: str = "telebirr",
        status: OrderStatus = OrderStatus.PENDING,
        age: timedelta = timedelta(0),
        plan: Optional[SubscriptionPlan] = None,
        external_order_id: Optional[str] = None,
        customer_email: Optional[str] = "buyer@example.com",
    ) -> Order:
        plan = plan or self.add_plan()
        order = Order(
            id=uuid.uuid4(),
            external_order_id=external_order_id or uuid.uuid4().hex,
            user_id=uuid.uuid4(),
            plan_id=plan.id,
            amount=plan.price,
            currency=plan.currency,
            gateway=gateway,
            status=status.value,
            customer_email=customer_email,
            created_at=self.clock - age,
        )
        self.orders[order.id] = order
        return order


@pytest.fixture
def ledger_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture(scope="session")
def make_ledger_store():
    """Store factory for property tests, which need a fresh store per example."""
    return InMemoryLedgerStore
