"""Seed subscription plans.

Run with: python -m scripts.seed_plans
"""

import asyncio
from decimal import Decimal

from sqlalchemy import delete, select

from app.core.database import async_session_maker
from app.modules.payment_gateway.models import SubscriptionPlan


PLANS_DATA = [
    {
        "name": "Basic",
        "price": Decimal("500.00"),
        "currency": "ETB",
        "duration_days": 30,
        "is_active": True,
    },
    {
        "name": "Pro",
        "price": Decimal("1200.00"),
        "currency": "ETB",
        "duration_days": 30,
        "is_active": True,
    },
    {
        "name": "Pro Yearly",
        "price": Decimal("12000.00"),
        "currency": "ETB",
        "duration_days": 365,
        "is_active": True,
    },
    {
        "name": "Pro (USD)",
        "price": Decimal("19.99"),
        "currency": "USD",
        "duration_days": 30,
        "is_active": True,
    },
]


async def seed_plans(reset: bool = False):
    """Seed plans into database.

    Args:
        reset: If True, delete all existing plans first
    """
    async with async_session_maker() as session:
        if reset:
            print("Deleting existing plans...")
            await session.execute(delete(SubscriptionPlan))
            await session.commit()

        for plan_data in PLANS_DATA:
            result = await session.execute(
                select(SubscriptionPlan).where(SubscriptionPlan.name == plan_data["name"])
            )
            existing = result.scalar_one_or_none()

            if existing:
                print(f"Updating plan: {plan_data['name']}")
                for key, value in plan_data.items():
                    setattr(existing, key, value)
            else:
                print(f"Creating plan: {plan_data['name']}")
                session.add(SubscriptionPlan(**plan_data))

        await session.commit()

        result = await session.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.price))
        print("\n" + "=" * 60)
        print("PLANS SUMMARY")
        print("=" * 60)
        for plan in result.scalars().all():
            print(f"{plan.id}  {plan.name:<12} {plan.price:>10} {plan.currency}  {plan.duration_days}d")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Seed subscription plans")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete all existing plans before seeding"
    )
    args = parser.parse_args()

    asyncio.run(seed_plans(reset=args.reset))
