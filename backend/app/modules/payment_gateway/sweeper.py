"""Expiry sweeper for abandoned orders.

Orders the user never paid stay PENDING forever unless something fails
them. Each run fails every PENDING order older than the cutoff with a
single conditional bulk update, so overlapping or missed runs are harmless.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import AsyncContextManager, Callable, Optional

from app.core.config import Settings
from app.core.logging import log_info
from app.modules.payment_gateway.repository import PaymentLedger
from app.modules.scheduler.manager import CronSchedule, JobScheduler, ScheduledJob

logger = logging.getLogger(__name__)

DEFAULT_CUTOFF_HOURS = 24
PAYMENT_CLEANUP_JOB = "payment_cleanup"


class OrderExpirySweeper:
    """Fails stale PENDING orders."""

    def __init__(
        self,
        ledger_scope: Callable[[], AsyncContextManager[PaymentLedger]],
        cutoff_hours: int = DEFAULT_CUTOFF_HOURS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if cutoff_hours <= 0:
            raise ValueError("cutoff_hours must be positive")
        self.ledger_scope = ledger_scope
        self.cutoff_hours = cutoff_hours
        self.clock = clock

    def cutoff(self) -> datetime:
        return self.clock() - timedelta(hours=self.cutoff_hours)

    async def run_once(self) -> int:
        """Run one sweep.

        Returns:
            Number of orders moved to FAILED
        """
        cutoff = self.cutoff()
        async with self.ledger_scope() as ledger:
            count = await ledger.orders.fail_stale_pending(cutoff)
            await ledger.commit()

        log_info(
            logger,
            "Expired stale pending orders",
            count=count,
            cutoff=cutoff.isoformat(),
        )
        return count


async def configure_sweeper(
    scheduler: JobScheduler,
    config: Settings,
    ledger_scope: Callable[[], AsyncContextManager[PaymentLedger]],
) -> Optional[ScheduledJob]:
    """Install, replace or remove the in-process sweep job from configuration.

    Raises:
        ValueError: SWEEP_SCHEDULE is not a valid cron expression
    """
    if not config.SWEEP_ENABLED or config.SWEEP_RUNNER != "inprocess":
        await scheduler.stop(PAYMENT_CLEANUP_JOB)
        return None

    schedule = CronSchedule.parse(config.SWEEP_SCHEDULE)
    sweeper = OrderExpirySweeper(ledger_scope, cutoff_hours=config.SWEEP_CUTOFF_HOURS)
    return await scheduler.replace(
        PAYMENT_CLEANUP_JOB,
        schedule,
        sweeper.run_once,
        description=f"Fail PENDING orders older than {config.SWEEP_CUTOFF_HOURS}h",
    )
