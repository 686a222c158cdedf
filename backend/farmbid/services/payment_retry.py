"""Failed-payment retry sweep (every `retry_interval_hours`).

Picks up failed `recurring_payment` transactions from the last
`retry_window_days` that have retries left and are unresolved.  Each
attempt is a new `recurring_payment_retry` transaction linked to the
original; the original only gains retry-tracking metadata.

Per original:
    contract gone or inactive           → skip
    cycle already paid elsewhere        → resolved_by="reconciliation"
    otherwise                           → retry_count += 1, new retry row,
                                          contract locked processing, charge
After `max_payment_retries` failed attempts the buyer is told to act and
the original drops out of the sweep for good.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from farmbid.config import settings
from farmbid.database import commit_versioned
from farmbid.middleware.exceptions import ContractNotActive, NoPaymentMethod, PersistenceConflict
from farmbid.models.contract import Contract
from farmbid.models.payment_method import PaymentMethod
from farmbid.models.transaction import Transaction
from farmbid.services.payments import (
    PaymentReconciliationEngine,
    charge_safely,
    get_buyer_settings,
    resolve_payment_method,
)
from farmbid.utils.clock import utcnow

logger = logging.getLogger("farmbid.payment_retry")


class PaymentRetryEngine(PaymentReconciliationEngine):
    """Shares settlement and announcements with reconciliation."""

    async def run(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        since = now - timedelta(days=settings.retry_window_days)
        summary = {"processed": 0, "succeeded": 0, "failed": 0, "processing": 0,
                   "resolved": 0, "skipped": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(Transaction.id)
                .where(
                    Transaction.type == "recurring_payment",
                    Transaction.status == "failed",
                    Transaction.created_at >= since,
                    Transaction.retry_count < settings.max_payment_retries,
                    Transaction.resolved_by.is_(None),
                )
                .order_by(Transaction.created_at)
            )
            candidate_ids = list(result.scalars().all())

        for transaction_id in candidate_ids:
            summary["processed"] += 1
            try:
                outcome = await self.retry_transaction(transaction_id, now)
            except ContractNotActive as e:
                logger.info("Skipping retry of %s: %s", transaction_id, e.message)
                outcome = "skipped"
            except PersistenceConflict:
                logger.warning("Transaction %s changed during retry, skipping", transaction_id)
                outcome = "skipped"
            except Exception:
                logger.exception("Retry failed for transaction %s", transaction_id)
                outcome = "failed"
            summary[outcome] += 1

        logger.info(
            "Payment retry: %d candidates, %d succeeded, %d failed, %d resolved, %d skipped",
            summary["processed"], summary["succeeded"], summary["failed"],
            summary["resolved"], summary["skipped"],
        )
        return summary

    async def retry_transaction(self, transaction_id: str, now: datetime) -> str:
        """Retry one failed charge.  Returns succeeded | failed | processing | resolved | skipped."""
        async with self.session_factory() as db:
            original = await db.get(Transaction, transaction_id)
            if (
                original is None
                or original.status != "failed"
                or original.resolved_by is not None
                or original.retry_count >= settings.max_payment_retries
            ):
                return "skipped"

            contract = await db.get(Contract, original.contract_id)
            if contract is None:
                return "skipped"
            if not contract.is_active:
                raise ContractNotActive(contract.id, contract.status)

            if _cycle_paid(contract, original.cycle):
                original.resolved_by = "reconciliation"
                await commit_versioned(db, "Transaction", original.id)
                logger.info(
                    "Transaction %s already settled by reconciliation for cycle %s",
                    original.id, original.cycle,
                )
                return "resolved"
            if contract.payment_status == "processing":
                return "skipped"

            buyer_settings = await get_buyer_settings(db, contract.buyer_id)
            method = await db.get(PaymentMethod, original.payment_method_id) if original.payment_method_id else None
            if method is None:
                try:
                    method = await resolve_payment_method(db, contract, buyer_settings)
                except NoPaymentMethod:
                    method = None

            original.retry_count += 1
            original.last_retry_date = now
            retry_number = original.retry_count

            if method is None:
                await commit_versioned(db, "Transaction", original.id)
                buyer_id, product_type = contract.buyer_id, contract.product_type
            else:
                retry = Transaction(
                    buyer_id=original.buyer_id,
                    seller_id=original.seller_id,
                    contract_id=original.contract_id,
                    fulfillment_id=original.fulfillment_id,
                    payment_method_id=method.id,
                    currency=original.currency,
                    subtotal=original.subtotal,
                    platform_fee=original.platform_fee,
                    delivery_fee=original.delivery_fee,
                    amount=original.amount,
                    status="pending",
                    type="recurring_payment_retry",
                    cycle=original.cycle,
                    original_transaction_id=original.id,
                    retry_number=retry_number,
                )
                db.add(retry)
                await db.flush()
                original.retry_transaction_id = retry.id
                contract.payment_status = "processing"
                contract.payment_cycle = original.cycle
                await commit_versioned(db, "Contract", contract.id)

                customer_token = contract.buyer.stripe_customer_id if contract.buyer else None
                method_token = method.gateway_token

        if method is None:
            data = {"contract_id": contract.id, "transaction_id": transaction_id}
            if retry_number >= settings.max_payment_retries:
                await self.dispatcher.notify(
                    buyer_id,
                    "payment_retries_exhausted",
                    "Payment Requires Action",
                    f"We could not process your payment for {product_type} after "
                    f"{retry_number} attempts because no payment method is on file. "
                    "Please add a payment method and pay manually.",
                    data=data,
                )
            else:
                await self.dispatcher.notify(
                    buyer_id,
                    "payment_method_required",
                    "Payment Method Required",
                    f"We could not retry your payment for {product_type} because no payment "
                    "method is on file. Add a payment method to continue.",
                    data=data,
                )
            return "failed"

        logger.info(
            "Retrying transaction %s (attempt %d/%d) as %s",
            transaction_id, retry_number, settings.max_payment_retries, retry.id,
        )
        charge = await charge_safely(
            self.gateway.retry_charge,
            customer_token,
            method_token,
            retry.amount_minor,
            retry.currency,
            {
                "contract_id": retry.contract_id,
                "transaction_id": retry.id,
                "original_transaction_id": transaction_id,
                "retry_number": retry_number,
                "type": retry.type,
            },
            idempotency_key=retry.id,
        )
        settlement = await self.settlement.apply(retry.id, charge, now)
        await self.announce(settlement)
        return settlement.outcome


def _cycle_paid(contract: Contract, cycle: int) -> bool:
    if contract.current_cycle > cycle:
        return True
    return contract.payment_cycle == cycle and contract.payment_status == "completed"
