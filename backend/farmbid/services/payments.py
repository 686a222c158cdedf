"""Payment reconciliation engine: charge due recurring contracts.

Daily sweep.  A run does two passes:

  1. Resume in-flight payments
     Transactions left `processing` by an earlier run are re-read from
     the gateway and settled.  A contract stuck `processing` with no
     gateway id (crash between commit and charge) is logged for manual
     review and never re-charged automatically.

  2. Charge due contracts
     For every contract in a recurrence with auto-pay on, a due
     `next_payment_date`, status active/fulfilled and no payment in
     flight or done for its current cycle:

       resolve payment method  →  compute amount
       → commit(pending Transaction + contract.payment_status=processing)
       → gateway off-session charge (idempotency key = transaction id)
       → commit(outcome)  →  notify

     A cycle whose failed charge is still inside the retry window belongs
     to the retry sweep and is skipped here; once that charge has used its
     retries the cycle waits for manual payment.  A failed charge whose
     window lapsed unretried is marked `superseded` by the new charge.

The processing flag and the pending transaction are durable before the
gateway is called, so a crash mid-call never leads to a second charge.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farmbid.config import settings
from farmbid.database import commit_versioned
from farmbid.middleware.exceptions import (
    GatewayError,
    NoPaymentMethod,
    PersistenceConflict,
    UnknownFrequencyError,
)
from farmbid.models.contract import ACTIVE_STATUSES, Contract
from farmbid.models.payment_method import PaymentMethod
from farmbid.models.recurring_settings import RecurringPaymentSettings
from farmbid.models.transaction import Transaction
from farmbid.services.gateway import ChargeResult
from farmbid.services.recurrence import next_occurrence
from farmbid.utils.clock import utcnow

logger = logging.getLogger("farmbid.payments")

CENTS = Decimal("0.01")
SETTLE_ATTEMPTS = 3


# ── Amounts ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ChargeAmount:
    subtotal: Decimal
    platform_fee: Decimal
    delivery_fee: Decimal
    total: Decimal

    @property
    def minor_units(self) -> int:
        return int((self.total * 100).to_integral_value(rounding=ROUND_HALF_UP))


def compute_amount(price, quantity, delivery_fee=None, fee_rate=None) -> ChargeAmount:
    """price × quantity, plus the platform fee on that subtotal, plus delivery."""
    rate = Decimal(str(settings.platform_fee_rate if fee_rate is None else fee_rate))
    subtotal = (Decimal(str(price)) * Decimal(str(quantity))).quantize(CENTS, ROUND_HALF_UP)
    platform_fee = (subtotal * rate).quantize(CENTS, ROUND_HALF_UP)
    delivery = Decimal(str(delivery_fee or 0)).quantize(CENTS, ROUND_HALF_UP)
    return ChargeAmount(
        subtotal=subtotal,
        platform_fee=platform_fee,
        delivery_fee=delivery,
        total=subtotal + platform_fee + delivery,
    )


# ── Lookups shared with retry and reminders ─────────────────


async def get_buyer_settings(db: AsyncSession, user_id: str) -> RecurringPaymentSettings | None:
    result = await db.execute(
        select(RecurringPaymentSettings).where(RecurringPaymentSettings.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def resolve_payment_method(
    db: AsyncSession,
    contract: Contract,
    buyer_settings: RecurringPaymentSettings | None,
) -> PaymentMethod:
    """Contract-level method, else the buyer's default.  Raises NoPaymentMethod."""
    candidates = [contract.payment_method_id]
    if buyer_settings is not None:
        candidates.append(buyer_settings.default_payment_method_id)
    for method_id in candidates:
        if not method_id:
            continue
        method = await db.get(PaymentMethod, method_id)
        if method is not None and method.user_id == contract.buyer_id:
            return method

    result = await db.execute(
        select(PaymentMethod).where(
            PaymentMethod.user_id == contract.buyer_id,
            PaymentMethod.is_default.is_(True),
        )
    )
    method = result.scalar_one_or_none()
    if method is None:
        raise NoPaymentMethod(contract.id)
    return method


def failure_channels(buyer_settings: RecurringPaymentSettings | None) -> list[str]:
    channels = ["in_app"]
    if buyer_settings is not None and buyer_settings.sms_notifications:
        channels.append("sms")
    return channels


# ── Settlement ──────────────────────────────────────────────


@dataclass
class Settlement:
    outcome: str  # succeeded | failed | processing
    transaction: Transaction
    contract: Contract
    channels: list[str]


class PaymentSettlement:
    """Apply a gateway outcome to its transaction and contract.

    Used by reconciliation, retry and the in-flight resume pass.  A
    version conflict (another sweep touched the contract meanwhile) is
    retried on fresh rows; the charge already happened and must be
    recorded.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def apply(self, transaction_id: str, charge: ChargeResult, now: datetime) -> Settlement:
        for attempt in range(1, SETTLE_ATTEMPTS + 1):
            try:
                return await self._apply_once(transaction_id, charge, now)
            except PersistenceConflict:
                if attempt == SETTLE_ATTEMPTS:
                    logger.error(
                        "Could not record %s outcome for transaction %s after %d attempts",
                        charge.status, transaction_id, attempt,
                    )
                    raise
                logger.warning("Conflict recording transaction %s, retrying", transaction_id)

    async def _apply_once(self, transaction_id: str, charge: ChargeResult, now: datetime) -> Settlement:
        async with self.session_factory() as db:
            txn = await db.get(Transaction, transaction_id)
            contract = await db.get(Contract, txn.contract_id)
            buyer_settings = await get_buyer_settings(db, contract.buyer_id)

            if charge.id:
                txn.payment_intent_id = charge.id

            if charge.status == "processing":
                txn.status = "processing"
            elif charge.succeeded:
                txn.status = "succeeded"
                txn.last_error = None
                self._settle_contract(contract, txn, now)
                if txn.original_transaction_id:
                    original = await db.get(Transaction, txn.original_transaction_id)
                    original.resolved_by = "retry"
                    original.retry_transaction_id = txn.id
            else:
                txn.status = "failed"
                txn.last_error = charge.error or "Payment failed"
                contract.payment_status = "failed"
                contract.payment_cycle = txn.cycle

            await commit_versioned(db, "Contract", contract.id)

        return Settlement(
            outcome=txn.status,
            transaction=txn,
            contract=contract,
            channels=failure_channels(buyer_settings),
        )

    @staticmethod
    def _settle_contract(contract: Contract, txn: Transaction, now: datetime) -> None:
        contract.payment_status = "completed"
        contract.payment_cycle = txn.cycle
        contract.last_payment_date = now

        # Spawned instances pay once; only recurring parents roll forward
        if not contract.is_recurring or contract.parent_contract_id is not None:
            return
        if contract.current_cycle != txn.cycle:
            return
        try:
            next_date = next_occurrence(contract.recurring_frequency, contract.next_payment_date)
        except UnknownFrequencyError:
            logger.error(
                "Contract %s paid cycle %s but has unknown frequency %r; "
                "next payment date left unchanged",
                contract.id, txn.cycle, contract.recurring_frequency,
            )
            return
        contract.next_payment_date = next_date
        contract.current_cycle += 1


# ── Engine ──────────────────────────────────────────────────


class PaymentReconciliationEngine:
    def __init__(self, session_factory: async_sessionmaker, gateway, dispatcher):
        self.session_factory = session_factory
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.settlement = PaymentSettlement(session_factory)

    async def run(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        summary = {
            "resumed": 0,
            "manual_review": 0,
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "processing": 0,
            "skipped": 0,
        }

        resumed, stuck = await self.resume_in_flight(now)
        summary["resumed"] = resumed
        summary["manual_review"] = stuck

        for contract_id in await self.due_contract_ids(now):
            summary["processed"] += 1
            try:
                outcome = await self.process_contract(contract_id, now)
            except PersistenceConflict:
                logger.warning("Contract %s changed during reconciliation, skipping", contract_id)
                outcome = "skipped"
            except Exception:
                logger.exception("Reconciliation failed for contract %s", contract_id)
                outcome = "failed"
            summary[outcome] += 1

        logger.info(
            "Reconciliation: %d due, %d succeeded, %d failed, %d processing, %d skipped "
            "(%d resumed, %d need review)",
            summary["processed"], summary["succeeded"], summary["failed"],
            summary["processing"], summary["skipped"], resumed, stuck,
        )
        return summary

    async def due_contract_ids(self, now: datetime) -> list[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Contract)
                .outerjoin(
                    RecurringPaymentSettings,
                    RecurringPaymentSettings.user_id == Contract.buyer_id,
                )
                .where(
                    or_(Contract.is_recurring.is_(True), Contract.parent_contract_id.is_not(None)),
                    or_(
                        Contract.auto_pay_enabled.is_(True),
                        RecurringPaymentSettings.auto_pay_enabled.is_(True),
                    ),
                    Contract.next_payment_date <= now,
                    Contract.status.in_(ACTIVE_STATUSES),
                )
                .order_by(Contract.next_payment_date)
            )
            return [c.id for c in result.scalars().all() if not c.cycle_settled()]

    async def process_contract(self, contract_id: str, now: datetime) -> str:
        """Charge one contract.  Returns succeeded | failed | processing | skipped."""
        async with self.session_factory() as db:
            contract = await db.get(Contract, contract_id)
            if contract is None or not contract.is_active or contract.cycle_settled():
                return "skipped"

            # One failed original per cycle; the retry sweep owns it while it is open
            retry_since = now - timedelta(days=settings.retry_window_days)
            for failed in await self._unresolved_failures(db, contract):
                if failed.retry_count >= settings.max_payment_retries:
                    logger.warning(
                        "Contract %s cycle %s exhausted automatic retries; needs manual payment",
                        contract_id, contract.current_cycle,
                    )
                    return "skipped"
                if failed.created_at >= retry_since:
                    logger.info(
                        "Contract %s cycle %s has failed charge %s awaiting retry",
                        contract_id, contract.current_cycle, failed.id,
                    )
                    return "skipped"
                failed.resolved_by = "superseded"

            fulfillment = contract.winning_fulfillment
            if fulfillment is None:
                logger.warning("Contract %s has no accepted fulfillment, cannot charge", contract_id)
                return "skipped"

            buyer_settings = await get_buyer_settings(db, contract.buyer_id)
            try:
                method = await resolve_payment_method(db, contract, buyer_settings)
            except NoPaymentMethod:
                logger.warning("Contract %s has no usable payment method", contract_id)
                buyer_id, product_type = contract.buyer_id, contract.product_type
                method = None

            if method is not None:
                amount = compute_amount(
                    fulfillment.price, fulfillment.quantity, fulfillment.delivery_fee
                )
                txn = Transaction(
                    buyer_id=contract.buyer_id,
                    seller_id=fulfillment.farmer_id,
                    contract_id=contract.id,
                    fulfillment_id=fulfillment.id,
                    payment_method_id=method.id,
                    currency=settings.currency,
                    subtotal=amount.subtotal,
                    platform_fee=amount.platform_fee,
                    delivery_fee=amount.delivery_fee,
                    amount=amount.total,
                    status="pending",
                    type="recurring_payment",
                    cycle=contract.current_cycle,
                )
                db.add(txn)
                contract.payment_status = "processing"
                contract.payment_cycle = contract.current_cycle
                await commit_versioned(db, "Contract", contract.id)

                customer_token = contract.buyer.stripe_customer_id if contract.buyer else None
                method_token = method.gateway_token

        if method is None:
            await self.dispatcher.notify(
                buyer_id,
                "payment_method_required",
                "Payment Method Required",
                f"Your recurring payment for {product_type} could not be processed because "
                "no payment method is on file. Add a payment method to continue.",
                data={"contract_id": contract_id},
            )
            return "failed"

        charge = await charge_safely(
            self.gateway.create_off_session_charge,
            customer_token,
            method_token,
            amount.minor_units,
            txn.currency,
            {
                "contract_id": contract_id,
                "transaction_id": txn.id,
                "cycle": txn.cycle,
                "type": txn.type,
            },
            idempotency_key=txn.id,
        )
        settlement = await self.settlement.apply(txn.id, charge, now)
        await self.announce(settlement)
        return settlement.outcome

    async def resume_in_flight(self, now: datetime) -> tuple[int, int]:
        """Settle processing charges from earlier runs.  Returns (resumed, needing review)."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Transaction.id, Transaction.payment_intent_id)
                .where(
                    Transaction.status.in_(("pending", "processing")),
                    Transaction.created_at < now,
                )
                .order_by(Transaction.created_at)
            )
            in_flight = result.all()

        resumed = stuck = 0
        for transaction_id, intent_id in in_flight:
            if not intent_id:
                stuck += 1
                logger.error(
                    "Transaction %s has no gateway id; contract left processing for manual review",
                    transaction_id,
                )
                continue
            try:
                charge = await self.gateway.retrieve_charge(intent_id)
            except GatewayError as e:
                logger.warning("Could not re-read charge %s: %s", intent_id, e.message)
                continue
            if charge.status == "processing":
                continue
            try:
                settlement = await self.settlement.apply(transaction_id, charge, now)
            except Exception:
                logger.exception("Failed to settle resumed transaction %s", transaction_id)
                continue
            resumed += 1
            await self.announce(settlement)
        return resumed, stuck

    async def announce(self, settlement: Settlement) -> None:
        """Tell the parties about a settled reconciliation or retry charge."""
        txn, contract = settlement.transaction, settlement.contract
        retry = txn.type == "recurring_payment_retry"
        data = {
            "contract_id": contract.id,
            "transaction_id": txn.id,
            "amount": txn.amount,
            "cycle": txn.cycle,
        }

        if settlement.outcome == "succeeded":
            await self.dispatcher.notify(
                txn.buyer_id,
                "payment_retry_success" if retry else "payment_success",
                "Payment Successful",
                f"Your recurring payment of ${txn.amount} for {contract.product_type} "
                f"has been processed{' on retry' if retry else ''}.",
                data=data,
            )
            await self.dispatcher.notify(
                txn.seller_id,
                "payment_received",
                "Payment Received",
                f"You have received a payment of ${txn.amount} for {contract.product_type}.",
                data=data,
            )
        elif settlement.outcome == "failed":
            if retry and txn.retry_number and txn.retry_number >= settings.max_payment_retries:
                await self.dispatcher.notify(
                    txn.buyer_id,
                    "payment_retries_exhausted",
                    "Payment Requires Action",
                    f"We could not process your payment of ${txn.amount} for "
                    f"{contract.product_type} after {txn.retry_number} attempts. "
                    "Please update your payment method and pay manually.",
                    data={**data, "error": txn.last_error},
                    channels=settlement.channels,
                )
                return
            await self.dispatcher.notify(
                txn.buyer_id,
                "payment_retry_failed" if retry else "payment_failed",
                "Payment Failed",
                f"Your recurring payment of ${txn.amount} for {contract.product_type} failed: "
                f"{txn.last_error}",
                data={**data, "error": txn.last_error},
                channels=settlement.channels,
            )

    @staticmethod
    async def _unresolved_failures(db: AsyncSession, contract: Contract) -> list[Transaction]:
        """Failed originals for the current cycle that no later charge has settled."""
        result = await db.execute(
            select(Transaction)
            .where(
                Transaction.contract_id == contract.id,
                Transaction.type == "recurring_payment",
                Transaction.cycle == contract.current_cycle,
                Transaction.status == "failed",
                Transaction.resolved_by.is_(None),
            )
            .order_by(Transaction.retry_count.desc(), Transaction.created_at)
        )
        return list(result.scalars().all())


async def charge_safely(charge_fn, *args, **kwargs) -> ChargeResult:
    """Call the gateway; declines, timeouts and transport errors become a failed result."""
    try:
        return await charge_fn(*args, **kwargs)
    except GatewayError as e:
        logger.warning("Gateway %s: %s", e.error_code, e.message)
        return ChargeResult(
            id=getattr(e, "payment_intent_id", None), status="failed", error=e.message
        )
