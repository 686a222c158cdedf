"""Failed-payment retry tests: linkage, caps, resolution."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from farmbid.middleware.exceptions import GatewayDeclined
from farmbid.models.contract import Contract
from farmbid.models.payment_method import PaymentMethod
from farmbid.models.transaction import Transaction
from farmbid.services.payment_retry import PaymentRetryEngine
from farmbid.services.payments import PaymentReconciliationEngine

NOW = datetime(2024, 2, 3, 12, 0)


@pytest.fixture
def engine(session_factory, gateway, dispatcher):
    return PaymentRetryEngine(session_factory, gateway, dispatcher)


async def _failed_payment(make, **txn_kw):
    buyer = await make.buyer()
    farmer = await make.farmer()
    method = await make.payment_method(buyer, is_default=True)
    contract = await make.recurring_contract(
        buyer,
        auto_pay_enabled=True,
        next_payment_date=datetime(2024, 2, 1),
        payment_status="failed",
        payment_cycle=0,
    )
    await make.fulfillment(contract, farmer)
    txn_kw.setdefault("created_at", NOW - timedelta(days=2))
    txn_kw.setdefault("payment_method_id", method.id)
    txn_kw.setdefault("last_error", "Your card was declined.")
    original = await make.transaction(contract, buyer, farmer, **txn_kw)
    return buyer, farmer, contract, original


async def _retries(session_factory, original_id):
    async with session_factory() as db:
        result = await db.execute(
            select(Transaction)
            .where(Transaction.original_transaction_id == original_id)
            .order_by(Transaction.retry_number)
        )
        return list(result.scalars().all())


@pytest.mark.payments
@pytest.mark.asyncio
class TestPaymentRetry:
    async def test_successful_retry_links_and_resolves(self, engine, make, gateway, dispatcher, session_factory):
        buyer, farmer, contract, original = await _failed_payment(make)

        summary = await engine.run(now=NOW)

        assert summary["succeeded"] == 1
        [retry] = await _retries(session_factory, original.id)
        assert retry.type == "recurring_payment_retry"
        assert retry.status == "succeeded"
        assert retry.retry_number == 1
        assert retry.amount == original.amount
        assert gateway.charges[0]["amount"] == 11500
        assert gateway.charges[0]["idempotency_key"] == retry.id

        refreshed_original = await make.get(Transaction, original.id)
        # Core fields of the original are never overwritten
        assert refreshed_original.status == "failed"
        assert refreshed_original.last_error == "Your card was declined."
        assert refreshed_original.retry_count == 1
        assert refreshed_original.last_retry_date == NOW
        assert refreshed_original.resolved_by == "retry"
        assert refreshed_original.retry_transaction_id == retry.id

        refreshed = await make.get(Contract, contract.id)
        assert refreshed.payment_status == "completed"
        assert refreshed.current_cycle == 1
        assert refreshed.next_payment_date == datetime(2024, 3, 1)

        assert dispatcher.of_type("payment_retry_success")[0]["user_id"] == buyer.id
        assert dispatcher.of_type("payment_received")[0]["user_id"] == farmer.id

    async def test_failed_retry_notifies_buyer(self, engine, make, gateway, dispatcher):
        buyer, _, _, original = await _failed_payment(make)
        gateway.queue(GatewayDeclined("declined again"))

        summary = await engine.run(now=NOW)

        assert summary["failed"] == 1
        refreshed_original = await make.get(Transaction, original.id)
        assert refreshed_original.retry_count == 1
        assert refreshed_original.resolved_by is None
        notices = dispatcher.for_user(buyer.id)
        assert [n["type"] for n in notices] == ["payment_retry_failed"]

    async def test_retry_count_capped_at_three(self, engine, make, gateway, dispatcher, session_factory):
        buyer, _, contract, original = await _failed_payment(make)

        for hours in (0, 12, 24, 36, 48):
            gateway.queue(GatewayDeclined("declined"))
            await engine.run(now=NOW + timedelta(hours=hours))

        refreshed_original = await make.get(Transaction, original.id)
        assert refreshed_original.retry_count == 3
        assert len(gateway.charges) == 3
        retries = await _retries(session_factory, original.id)
        assert [r.retry_number for r in retries] == [1, 2, 3]
        assert all(r.status == "failed" for r in retries)

        assert len(dispatcher.of_type("payment_retry_failed")) == 2
        [exhausted] = dispatcher.of_type("payment_retries_exhausted")
        assert exhausted["user_id"] == buyer.id

        refreshed = await make.get(Contract, contract.id)
        assert refreshed.next_payment_date == datetime(2024, 2, 1)

    async def test_inactive_contract_is_skipped(self, engine, make, gateway):
        _, _, contract, original = await _failed_payment(make)
        async with engine.session_factory() as db:
            row = await db.get(Contract, contract.id)
            row.status = "cancelled"
            await db.commit()

        summary = await engine.run(now=NOW)

        assert summary["skipped"] == 1
        assert gateway.charges == []
        assert (await make.get(Transaction, original.id)).retry_count == 0

    async def test_already_settled_cycle_resolves_by_reconciliation(self, engine, make, gateway):
        _, _, contract, original = await _failed_payment(make)
        async with engine.session_factory() as db:
            row = await db.get(Contract, contract.id)
            row.payment_status = "completed"
            row.current_cycle = 1
            await db.commit()

        summary = await engine.run(now=NOW)

        assert summary["resolved"] == 1
        assert gateway.charges == []
        refreshed_original = await make.get(Transaction, original.id)
        assert refreshed_original.resolved_by == "reconciliation"
        assert refreshed_original.retry_count == 0

    async def test_outside_window_is_ignored(self, engine, make, gateway):
        await _failed_payment(make, created_at=NOW - timedelta(days=8))

        summary = await engine.run(now=NOW)

        assert summary["processed"] == 0
        assert gateway.charges == []

    async def test_retry_rows_are_not_retried_themselves(self, engine, make, gateway):
        await _failed_payment(make, type="recurring_payment_retry", retry_number=1)

        summary = await engine.run(now=NOW)

        assert summary["processed"] == 0

    async def test_missing_method_on_last_attempt_reports_exhaustion(self, engine, make, gateway, dispatcher):
        buyer, _, _, original = await _failed_payment(make)
        async with engine.session_factory() as db:
            await db.delete(await db.get(PaymentMethod, original.payment_method_id))
            await db.commit()

        for hours in (0, 12, 24, 36):
            await engine.run(now=NOW + timedelta(hours=hours))

        assert gateway.charges == []
        assert (await make.get(Transaction, original.id)).retry_count == 3
        assert len(dispatcher.of_type("payment_method_required")) == 2
        [exhausted] = dispatcher.of_type("payment_retries_exhausted")
        assert exhausted["user_id"] == buyer.id
        assert "no payment method" in exhausted["message"]


@pytest.mark.payments
@pytest.mark.asyncio
class TestReconciliationAndRetryTogether:
    async def test_failed_cycle_is_charged_at_most_four_times(self, session_factory, make, gateway, dispatcher):
        reconciliation = PaymentReconciliationEngine(session_factory, gateway, dispatcher)
        retries = PaymentRetryEngine(session_factory, gateway, dispatcher)
        buyer = await make.buyer()
        farmer = await make.farmer()
        await make.payment_method(buyer, is_default=True)
        contract = await make.recurring_contract(
            buyer, auto_pay_enabled=True, next_payment_date=datetime(2024, 2, 1)
        )
        await make.fulfillment(contract, farmer)
        gateway.queue(*[GatewayDeclined("declined") for _ in range(20)])

        start = datetime(2024, 2, 1, 6, 0)
        charges_at_exhaustion = None
        for step in range(12):
            now = start + timedelta(hours=12 * step)
            if step % 2 == 0:
                await reconciliation.run(now=now)
            await retries.run(now=now)
            if charges_at_exhaustion is None and dispatcher.of_type("payment_retries_exhausted"):
                charges_at_exhaustion = len(gateway.charges)

        assert len(gateway.charges) == 4
        assert charges_at_exhaustion == 4
        assert len(dispatcher.of_type("payment_retries_exhausted")) == 1
        assert len(dispatcher.of_type("payment_failed")) == 1
        refreshed = await make.get(Contract, contract.id)
        assert refreshed.current_cycle == 0
        assert refreshed.next_payment_date == datetime(2024, 2, 1)
