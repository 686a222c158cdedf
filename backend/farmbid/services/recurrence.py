"""Recurrence engine: spawn contract instances from recurring parents.

Daily sweep.  For every recurring parent that is due
(`next_delivery_date <= now < recurring_end_date`):

  1. create an `open` instance contract copying the parent's terms,
     due on the parent's current `next_delivery_date`
  2. append a RecurringInstance lineage row to the parent
  3. advance the parent's `next_delivery_date` by its frequency

Steps 1–3 are a single commit guarded by the parent's version column.
Only after that commit is the buyer notified and the instance handed to
the farmer fan-out.  Parents whose `recurring_end_date` has passed are
closed out as `completed`.
"""

import logging
import uuid
from datetime import datetime

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from farmbid.database import commit_versioned
from farmbid.middleware.exceptions import PersistenceConflict, UnknownFrequencyError
from farmbid.models.contract import Contract, RecurringInstance
from farmbid.utils.clock import utcnow

logger = logging.getLogger("farmbid.recurrence")

# relativedelta clamps to the last day of shorter months (Jan 31 + 1 month → Feb 29)
FREQUENCY_STEPS = {
    "weekly": relativedelta(days=7),
    "biweekly": relativedelta(days=14),
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "biannually": relativedelta(months=6),
    "annually": relativedelta(years=1),
}

# Parent statuses that keep producing instances
SPAWNING_STATUSES = ("open", "active")


def frequency_step(frequency: str | None) -> relativedelta:
    try:
        return FREQUENCY_STEPS[frequency]
    except KeyError:
        raise UnknownFrequencyError(frequency) from None


def next_occurrence(frequency: str | None, current: datetime) -> datetime:
    """The date one period after `current`.  Unknown frequencies raise."""
    return current + frequency_step(frequency)


class RecurrenceEngine:
    def __init__(self, session_factory: async_sessionmaker, dispatcher, fanout):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.fanout = fanout

    async def run(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        summary = {"processed": 0, "created": 0, "failed": 0, "completed": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(Contract.id)
                .where(
                    Contract.is_recurring.is_(True),
                    Contract.parent_contract_id.is_(None),
                    Contract.status.in_(SPAWNING_STATUSES),
                    Contract.next_delivery_date <= now,
                    or_(
                        Contract.recurring_end_date.is_(None),
                        Contract.recurring_end_date > now,
                    ),
                )
                .order_by(Contract.next_delivery_date)
            )
            due_ids = list(result.scalars().all())

        for contract_id in due_ids:
            summary["processed"] += 1
            try:
                instance = await self.spawn_instance(contract_id, now)
            except UnknownFrequencyError as e:
                logger.error(
                    "Contract %s has unknown frequency %r, skipping", contract_id, e.frequency
                )
                summary["failed"] += 1
                continue
            except PersistenceConflict:
                logger.warning("Contract %s changed during spawn, retrying next run", contract_id)
                summary["failed"] += 1
                continue
            except Exception:
                logger.exception("Failed to spawn instance for contract %s", contract_id)
                summary["failed"] += 1
                continue

            if instance is not None:
                summary["created"] += 1
                await self._announce(instance)

        summary["completed"] = await self.complete_expired(now)
        logger.info(
            "Recurrence sweep: %d due, %d created, %d failed, %d completed",
            summary["processed"], summary["created"], summary["failed"], summary["completed"],
        )
        return summary

    async def spawn_instance(self, contract_id: str, now: datetime) -> Contract | None:
        """Create the next instance for one parent.  Returns None if no longer due."""
        async with self.session_factory() as db:
            parent = await db.get(Contract, contract_id)
            if parent is None or not _is_due(parent, now):
                return None

            delivery_date = parent.next_delivery_date
            step = frequency_step(parent.recurring_frequency)

            instance = Contract(
                id=str(uuid.uuid4()),
                buyer_id=parent.buyer_id,
                title=parent.title,
                product_type=parent.product_type,
                product_category=parent.product_category,
                quantity=parent.quantity,
                max_price=parent.max_price,
                delivery_method=parent.delivery_method,
                delivery_address=parent.delivery_address,
                end_time=delivery_date,
                status="open",
                is_recurring=False,
                recurring_frequency=parent.recurring_frequency,
                parent_contract_id=parent.id,
                notified_farmers=[],
                auto_pay_enabled=parent.auto_pay_enabled,
                payment_method_id=parent.payment_method_id,
                notify_before_charge=parent.notify_before_charge,
                notification_days=parent.notification_days,
                next_payment_date=delivery_date,
                payment_status="pending",
            )
            db.add(instance)

            parent.recurring_instances.append(
                RecurringInstance(
                    instance_number=len(parent.recurring_instances) + 1,
                    start_date=delivery_date - step,
                    end_date=delivery_date,
                    status="active",
                    fulfillment_id=instance.id,
                )
            )
            parent.next_delivery_date = delivery_date + step

            await commit_versioned(db, "Contract", parent.id)

        logger.info(
            "Spawned instance %s from contract %s (due %s, next %s)",
            instance.id, contract_id, delivery_date, delivery_date + step,
        )
        return instance

    async def complete_expired(self, now: datetime) -> int:
        """Close recurring parents whose end date has passed."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Contract.id).where(
                    Contract.is_recurring.is_(True),
                    Contract.parent_contract_id.is_(None),
                    Contract.status.in_(SPAWNING_STATUSES),
                    Contract.recurring_end_date <= now,
                )
            )
            expired_ids = list(result.scalars().all())

        completed = 0
        for contract_id in expired_ids:
            async with self.session_factory() as db:
                contract = await db.get(Contract, contract_id)
                if contract is None or contract.status not in SPAWNING_STATUSES:
                    continue
                contract.status = "completed"
                try:
                    await commit_versioned(db, "Contract", contract_id)
                except PersistenceConflict:
                    logger.warning("Contract %s changed while completing, skipping", contract_id)
                    continue
            completed += 1
            logger.info("Recurring contract %s reached its end date, completed", contract_id)
        return completed

    async def _announce(self, instance: Contract) -> None:
        await self.dispatcher.notify(
            instance.buyer_id,
            "recurring_instance_created",
            "New Contract Instance",
            f"A new instance of your recurring contract for {instance.quantity} units "
            f"of {instance.product_type} has been created.",
            data={
                "contract_id": instance.id,
                "parent_contract_id": instance.parent_contract_id,
                "end_time": instance.end_time,
            },
        )
        try:
            await self.fanout.notify_farmers(instance.id)
        except Exception:
            logger.exception("Farmer fan-out failed for instance %s", instance.id)


def _is_due(parent: Contract, now: datetime) -> bool:
    return (
        parent.is_recurring
        and parent.parent_contract_id is None
        and parent.status in SPAWNING_STATUSES
        and parent.next_delivery_date is not None
        and parent.next_delivery_date <= now
        and (parent.recurring_end_date is None or now < parent.recurring_end_date)
    )
