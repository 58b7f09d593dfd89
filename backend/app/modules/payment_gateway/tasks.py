"""Celery tasks for payment processing.

- send_payment_confirmation: SMTP delivery with exponential backoff
- sweep_expired_orders: the expiry sweep, for deployments that run it
  from Celery beat instead of the in-process scheduler
"""

import asyncio
import logging

from celery import Celery
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.celery_app import celery_app
from app.core.config import Settings, settings
from app.core.logging import correlation_scope, log_error, log_info
from app.modules.payment_gateway.errors import NotificationFailure
from app.modules.payment_gateway.notifications import (
    EmailSender,
    PaymentConfirmation,
    render_confirmation,
)
from app.modules.payment_gateway.repository import ledger_factory
from app.modules.payment_gateway.sweeper import OrderExpirySweeper

logger = logging.getLogger(__name__)

SWEEP_TASK_NAME = "app.modules.payment_gateway.tasks.sweep_expired_orders"


@celery_app.task(
    bind=True,
    autoretry_for=(NotificationFailure,),
    max_retries=settings.NOTIFICATION_MAX_RETRIES,
    retry_backoff=True,
    retry_backoff_max=settings.NOTIFICATION_RETRY_BACKOFF_MAX,
    retry_jitter=True,
)
def send_payment_confirmation(self, confirmation: dict) -> dict:
    """Deliver a payment confirmation email.

    Args:
        confirmation: PaymentConfirmation as a dict

    Returns:
        Delivery result dict
    """
    conf = PaymentConfirmation(**confirmation)
    subject, body = render_confirmation(conf)

    with correlation_scope(f"confirmation-{conf.order_id}"):
        try:
            EmailSender().send(conf.email, subject, body)
        except NotificationFailure as e:
            log_error(
                logger,
                "Payment confirmation delivery failed",
                e,
                order_id=conf.order_id,
                attempt=self.request.retries + 1,
            )
            raise

        log_info(logger, "Payment confirmation sent", order_id=conf.order_id)
    return {"order_id": conf.order_id, "status": "sent"}


async def _sweep(cutoff_hours: int) -> int:
    # Worker processes get a fresh event loop per task; never share pooled
    # connections across loops
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    try:
        session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        sweeper = OrderExpirySweeper(ledger_factory(session_maker), cutoff_hours=cutoff_hours)
        return await sweeper.run_once()
    finally:
        await engine.dispose()


@celery_app.task(name=SWEEP_TASK_NAME)
def sweep_expired_orders(cutoff_hours: int = settings.SWEEP_CUTOFF_HOURS) -> dict:
    """Fail PENDING orders older than cutoff_hours."""
    count = asyncio.run(_sweep(cutoff_hours))
    return {"expired": count}


def register_beat_schedule(app: Celery, config: Settings) -> None:
    """Install the sweep in Celery beat when beat is the configured runner."""
    from app.modules.scheduler.manager import CronSchedule

    if config.SWEEP_RUNNER != "celery" or not config.SWEEP_ENABLED:
        return
    app.conf.beat_schedule = {
        **(app.conf.beat_schedule or {}),
        "payment_cleanup": {
            "task": SWEEP_TASK_NAME,
            "schedule": CronSchedule.parse(config.SWEEP_SCHEDULE).to_crontab(),
            "kwargs": {"cutoff_hours": config.SWEEP_CUTOFF_HOURS},
        },
    }


register_beat_schedule(celery_app, settings)
