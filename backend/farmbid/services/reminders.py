"""Reminder & expiration scheduler.

Three independent sweeps, each sending at most one notice per threshold:

  payment reminders    daily    contract due within its notice window
                                (deduped on the payment date reminded for)
  method expiration    monthly  cards expiring this month, plus a separate
                                warning when the card backs auto-pay contracts
                                (deduped on "YYYY-MM")
  contract renewal     daily    recurring end date within 30 days, at the
                                30/14/7/3 marks (deduped on the smallest
                                mark announced)

Matching is on ranges, not exact days, so a missed scheduler day still
produces its notice on the next run, exactly once.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from farmbid.config import settings
from farmbid.database import commit_versioned
from farmbid.middleware.exceptions import PersistenceConflict
from farmbid.models.contract import ACTIVE_STATUSES, Contract
from farmbid.models.payment_method import PaymentMethod
from farmbid.models.recurring_settings import RecurringPaymentSettings
from farmbid.services.payments import get_buyer_settings
from farmbid.utils.clock import days_between, utcnow

logger = logging.getLogger("farmbid.reminders")

RENEWAL_STATUSES = ("open", "active")


def renewal_mark(days_remaining: int, marks: list[int] | None = None) -> int | None:
    """Smallest threshold at or above `days_remaining`, or None if outside the window."""
    marks = marks or settings.renewal_marks
    eligible = [m for m in marks if days_remaining <= m]
    return min(eligible) if eligible else None


def notice_days_for(contract: Contract, buyer_settings: RecurringPaymentSettings | None) -> int:
    if contract.notification_days:
        return contract.notification_days
    if buyer_settings is not None and buyer_settings.advance_notice_days:
        return buyer_settings.advance_notice_days
    return settings.default_advance_notice_days


class ReminderScheduler:
    def __init__(self, session_factory: async_sessionmaker, dispatcher):
        self.session_factory = session_factory
        self.dispatcher = dispatcher

    # ── Payment reminders ────────────────────────────────────

    async def send_payment_reminders(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        summary = {"checked": 0, "sent": 0, "failed": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(Contract.id).where(
                    or_(Contract.is_recurring.is_(True), Contract.parent_contract_id.is_not(None)),
                    Contract.status.in_(ACTIVE_STATUSES),
                    Contract.next_payment_date.is_not(None),
                    # Widest notice window allowed; the exact window is per contract
                    Contract.next_payment_date <= now + timedelta(days=31),
                    or_(
                        Contract.payment_reminder_sent_for.is_(None),
                        Contract.payment_reminder_sent_for != Contract.next_payment_date,
                    ),
                )
            )
            contract_ids = list(result.scalars().all())

        for contract_id in contract_ids:
            summary["checked"] += 1
            try:
                if await self._remind(contract_id, now):
                    summary["sent"] += 1
            except PersistenceConflict:
                logger.warning("Contract %s changed while reminding, will retry next run", contract_id)
                summary["failed"] += 1
            except Exception:
                logger.exception("Payment reminder failed for contract %s", contract_id)
                summary["failed"] += 1

        logger.info("Payment reminders: %d checked, %d sent", summary["checked"], summary["sent"])
        return summary

    async def _remind(self, contract_id: str, now: datetime) -> bool:
        async with self.session_factory() as db:
            contract = await db.get(Contract, contract_id)
            if contract is None or contract.payment_reminder_sent_for == contract.next_payment_date:
                return False

            buyer_settings = await get_buyer_settings(db, contract.buyer_id)
            auto_pay = contract.auto_pay_enabled or bool(
                buyer_settings and buyer_settings.auto_pay_enabled
            )
            if auto_pay and not contract.notify_before_charge:
                return False

            days_until = days_between(now, contract.next_payment_date)
            if not 0 <= days_until <= notice_days_for(contract, buyer_settings):
                return False

            contract.payment_reminder_sent_for = contract.next_payment_date
            await commit_versioned(db, "Contract", contract.id)

            due = contract.next_payment_date
            product_type = contract.product_type
            channels = buyer_settings.channels() if buyer_settings else ["in_app"]

        when = "today" if days_until == 0 else f"in {days_until} day{'s' if days_until != 1 else ''}"
        action = "will be charged automatically" if auto_pay else "is due"
        await self.dispatcher.notify(
            contract.buyer_id,
            "payment_reminder",
            "Upcoming Payment",
            f"Your recurring payment for {product_type} {action} {when} ({due:%Y-%m-%d}).",
            data={"contract_id": contract_id, "payment_date": due, "days_until": days_until},
            channels=channels,
        )
        return True

    # ── Payment-method expiration ────────────────────────────

    async def check_expiring_payment_methods(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        stamp = f"{now.year:04d}-{now.month:02d}"
        summary = {"expiring": 0, "notified": 0, "contract_warnings": 0, "failed": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentMethod.id).where(
                    PaymentMethod.exp_year == now.year,
                    PaymentMethod.exp_month == now.month,
                    or_(
                        PaymentMethod.expiry_notified_for.is_(None),
                        PaymentMethod.expiry_notified_for != stamp,
                    ),
                )
            )
            method_ids = list(result.scalars().all())

        for method_id in method_ids:
            summary["expiring"] += 1
            try:
                affected = await self._warn_expiring(method_id, stamp)
            except Exception:
                logger.exception("Expiration notice failed for payment method %s", method_id)
                summary["failed"] += 1
                continue
            if affected is None:
                continue
            summary["notified"] += 1
            if affected:
                summary["contract_warnings"] += 1

        logger.info(
            "Expiring payment methods: %d expiring, %d notified, %d backing auto-pay",
            summary["expiring"], summary["notified"], summary["contract_warnings"],
        )
        return summary

    async def _warn_expiring(self, method_id: str, stamp: str) -> list[str] | None:
        """Notify the owner once for this month.  Returns affected contract ids, or None if skipped."""
        async with self.session_factory() as db:
            method = await db.get(PaymentMethod, method_id)
            if method is None or method.expiry_notified_for == stamp:
                return None

            buyer_settings = await get_buyer_settings(db, method.user_id)
            is_default = method.is_default or bool(
                buyer_settings and buyer_settings.default_payment_method_id == method.id
            )
            backed_by_method = Contract.payment_method_id == method.id
            if is_default:
                backed_by_method = or_(backed_by_method, Contract.payment_method_id.is_(None))

            conditions = [
                Contract.buyer_id == method.user_id,
                or_(Contract.is_recurring.is_(True), Contract.parent_contract_id.is_not(None)),
                Contract.status.in_(ACTIVE_STATUSES),
                backed_by_method,
            ]
            # Buyer-wide auto-pay covers every contract
            if buyer_settings is None or not buyer_settings.auto_pay_enabled:
                conditions.append(Contract.auto_pay_enabled.is_(True))

            result = await db.execute(
                select(Contract.id, Contract.product_type)
                .where(*conditions)
                .order_by(Contract.created_at)
            )
            affected = result.all()

            method.expiry_notified_for = stamp
            await db.commit()

            user_id, label = method.user_id, method.label
            expiry = f"{method.exp_month:02d}/{method.exp_year}"
            channels = buyer_settings.channels() if buyer_settings else ["in_app"]

        await self.dispatcher.notify(
            user_id,
            "payment_method_expiring",
            "Payment Method Expiring",
            f"Your {label} expires at the end of this month ({expiry}). "
            "Please update your payment method.",
            data={"payment_method_id": method_id, "expiry": expiry},
            channels=channels,
        )

        if affected:
            products = ", ".join(sorted({product for _, product in affected}))
            await self.dispatcher.notify(
                user_id,
                "payment_method_expiring_contracts",
                "Action Required: Auto-Pay Card Expiring",
                f"Your {label} pays for {len(affected)} active recurring "
                f"contract{'s' if len(affected) != 1 else ''} ({products}). Update it before "
                f"{expiry} ends to avoid missed payments.",
                data={
                    "payment_method_id": method_id,
                    "contract_ids": [contract_id for contract_id, _ in affected],
                },
                channels=channels,
            )
        return [contract_id for contract_id, _ in affected]

    # ── Contract renewal ─────────────────────────────────────

    async def send_renewal_notices(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        window = max(settings.renewal_marks)
        summary = {"checked": 0, "sent": 0, "failed": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(Contract.id).where(
                    Contract.is_recurring.is_(True),
                    Contract.parent_contract_id.is_(None),
                    Contract.status.in_(RENEWAL_STATUSES),
                    Contract.recurring_end_date.is_not(None),
                    Contract.recurring_end_date > now,
                    Contract.recurring_end_date <= now + timedelta(days=window + 1),
                )
            )
            contract_ids = list(result.scalars().all())

        for contract_id in contract_ids:
            summary["checked"] += 1
            try:
                if await self._renewal_notice(contract_id, now):
                    summary["sent"] += 1
            except PersistenceConflict:
                logger.warning("Contract %s changed during renewal notice, will retry", contract_id)
                summary["failed"] += 1
            except Exception:
                logger.exception("Renewal notice failed for contract %s", contract_id)
                summary["failed"] += 1

        logger.info("Renewal notices: %d checked, %d sent", summary["checked"], summary["sent"])
        return summary

    async def _renewal_notice(self, contract_id: str, now: datetime) -> bool:
        async with self.session_factory() as db:
            contract = await db.get(Contract, contract_id)
            if contract is None or contract.recurring_end_date is None:
                return False

            days_remaining = days_between(now, contract.recurring_end_date)
            mark = renewal_mark(days_remaining)
            if mark is None:
                return False
            # An extended end date starts the countdown over
            announced = (
                contract.renewal_notice_mark
                if contract.renewal_notice_for == contract.recurring_end_date
                else None
            )
            if announced is not None and mark >= announced:
                return False

            contract.renewal_notice_mark = mark
            contract.renewal_notice_for = contract.recurring_end_date
            await commit_versioned(db, "Contract", contract.id)

            winner = contract.winning_fulfillment
            seller_id = winner.farmer_id if winner else None
            buyer_id, product_type = contract.buyer_id, contract.product_type
            end_date = contract.recurring_end_date

        data = {"contract_id": contract_id, "end_date": end_date, "days_remaining": days_remaining}
        await self.dispatcher.notify(
            buyer_id,
            "contract_renewal",
            "Contract Ending Soon",
            f"Your recurring contract for {product_type} ends in {days_remaining} "
            f"day{'s' if days_remaining != 1 else ''} ({end_date:%Y-%m-%d}). "
            "Renew it to keep deliveries coming.",
            data=data,
        )
        if seller_id:
            await self.dispatcher.notify(
                seller_id,
                "contract_renewal",
                "Contract Ending Soon",
                f"Your recurring supply contract for {product_type} ends in {days_remaining} "
                f"day{'s' if days_remaining != 1 else ''} ({end_date:%Y-%m-%d}).",
                data=data,
            )
        return True
