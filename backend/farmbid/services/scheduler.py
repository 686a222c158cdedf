"""Background task scheduler: runs the recurring-contract sweeps.

Uses FastAPI's lifespan context to start/stop asyncio background loops.
No external scheduler (no Celery, no APScheduler): each loop sleeps
until its next slot, runs its sweeps in order, and goes back to sleep.

    daily      (SCHEDULER_HOUR, UTC)   recurrence → reconciliation
                                       → payment_reminders → renewal_notices
    periodic   (RETRY_INTERVAL_HOURS)  payment_retry
    monthly    (EXPIRATION_SWEEP_DAY)  expiring_methods

Every sweep runs under a Redis lock named after it, so a manual trigger
or a second worker never runs the same sweep concurrently.

`build_sweeps` is the composition root: it wires the gateway and the
notification dispatcher into the engines.  Tests and the jobs router
pass their own session factory (and fakes) through it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from dateutil.relativedelta import relativedelta
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker

from farmbid.config import settings
from farmbid.database import async_session
from farmbid.middleware.exceptions import ResourceNotFoundError
from farmbid.services.farmer_fanout import FarmerFanout
from farmbid.services.gateway import PaymentGateway, StripeGateway
from farmbid.services.notifications import NotificationDispatcher
from farmbid.services.payment_retry import PaymentRetryEngine
from farmbid.services.payments import PaymentReconciliationEngine
from farmbid.services.recurrence import RecurrenceEngine
from farmbid.services.reminders import ReminderScheduler
from farmbid.utils.clock import utcnow
from farmbid.utils.sweep_lock import close_redis, sweep_lock

logger = logging.getLogger("farmbid.scheduler")

Sweep = Callable[[datetime | None], Awaitable[dict]]

DAILY_SWEEPS = ("recurrence", "reconciliation", "payment_reminders", "renewal_notices")
RETRY_SWEEPS = ("payment_retry",)
MONTHLY_SWEEPS = ("expiring_methods",)
SWEEP_NAMES = DAILY_SWEEPS + RETRY_SWEEPS + MONTHLY_SWEEPS


def build_sweeps(
    session_factory: async_sessionmaker,
    gateway: PaymentGateway | None = None,
    dispatcher=None,
) -> dict[str, Sweep]:
    dispatcher = dispatcher or NotificationDispatcher(session_factory)
    gateway = gateway or StripeGateway()

    recurrence = RecurrenceEngine(
        session_factory, dispatcher, FarmerFanout(session_factory, dispatcher)
    )
    reconciliation = PaymentReconciliationEngine(session_factory, gateway, dispatcher)
    retry = PaymentRetryEngine(session_factory, gateway, dispatcher)
    reminders = ReminderScheduler(session_factory, dispatcher)

    return {
        "recurrence": recurrence.run,
        "reconciliation": reconciliation.run,
        "payment_reminders": reminders.send_payment_reminders,
        "renewal_notices": reminders.send_renewal_notices,
        "payment_retry": retry.run,
        "expiring_methods": reminders.check_expiring_payment_methods,
    }


async def run_sweep(
    name: str,
    sweeps: dict[str, Sweep] | None = None,
    now: datetime | None = None,
) -> dict | None:
    """Run one sweep under its lock.  Returns None if another holder has the lock."""
    sweeps = sweeps or build_sweeps(async_session)
    if name not in sweeps:
        raise ResourceNotFoundError("Sweep", name)

    async with sweep_lock(name) as acquired:
        if not acquired:
            return None
        logger.info("Starting %s sweep", name)
        summary = await sweeps[name](now)
        logger.info("Finished %s sweep: %s", name, summary)
        return summary


# ── Slot arithmetic ──────────────────────────────────────────


def next_daily_run(now: datetime, hour: int) -> datetime:
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return next_run


def next_interval_run(now: datetime, hours: int) -> datetime:
    return now + timedelta(hours=hours)


def next_monthly_run(now: datetime, day: int, hour: int) -> datetime:
    # relativedelta(day=31) clamps to the month's last day
    slot = relativedelta(day=day, hour=hour, minute=0, second=0, microsecond=0)
    next_run = now + slot
    if next_run <= now:
        next_run = now + relativedelta(months=1) + slot
    return next_run


# ── Loops ────────────────────────────────────────────────────


async def _scheduler_loop(
    label: str,
    names: tuple[str, ...],
    next_run_at: Callable[[datetime], datetime],
    sweeps: dict[str, Sweep],
) -> None:
    while True:
        now = utcnow()
        next_run = next_run_at(now)
        wait_seconds = (next_run - now).total_seconds()
        logger.info(
            "Next %s run at %s (in %.0f seconds)",
            label,
            next_run.isoformat(),
            wait_seconds,
        )

        await asyncio.sleep(wait_seconds)

        for name in names:
            try:
                await run_sweep(name, sweeps)
            except Exception:
                logger.exception("Unhandled error in %s sweep", name)

        # Small buffer to avoid running twice in the same minute
        await asyncio.sleep(60)


def start_scheduler(sweeps: dict[str, Sweep]) -> list[asyncio.Task]:
    return [
        asyncio.create_task(_scheduler_loop(
            "daily", DAILY_SWEEPS,
            lambda now: next_daily_run(now, settings.scheduler_hour),
            sweeps,
        )),
        asyncio.create_task(_scheduler_loop(
            "retry", RETRY_SWEEPS,
            lambda now: next_interval_run(now, settings.retry_interval_hours),
            sweeps,
        )),
        asyncio.create_task(_scheduler_loop(
            "monthly", MONTHLY_SWEEPS,
            lambda now: next_monthly_run(
                now, settings.expiration_sweep_day, settings.scheduler_hour
            ),
            sweeps,
        )),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: start the scheduler on startup, cancel on shutdown."""
    tasks = []
    if settings.scheduler_enabled:
        tasks = start_scheduler(build_sweeps(async_session))
        logger.info("Sweep scheduler started (%d loops)", len(tasks))
    else:
        logger.info("Sweep scheduler disabled")
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await close_redis()
        if tasks:
            logger.info("Sweep scheduler stopped")
