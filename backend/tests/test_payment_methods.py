"""Payment-method and settings management tests."""

from datetime import datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from farmbid.middleware.exceptions import BusinessLogicError, ResourceNotFoundError
from farmbid.models.contract import Contract, Fulfillment
from farmbid.models.payment_method import PaymentMethod
from farmbid.schemas.payment_method import (
    CardDetails,
    ContractPaymentSettingsUpdate,
    PaymentMethodCreate,
    RecurringSettingsUpdate,
)
from farmbid.services.payment_methods import (
    add_payment_method,
    remove_payment_method,
    select_winning_fulfillment,
    set_default_payment_method,
    update_contract_payment_settings,
    update_recurring_settings,
)
from farmbid.services.payments import get_buyer_settings


def _card(last4="4242", **kw) -> PaymentMethodCreate:
    return PaymentMethodCreate(
        gateway_token=f"pm_{last4}",
        card=CardDetails(brand="visa", last4=last4, exp_month=12, exp_year=2030),
        **kw,
    )


async def _defaults(db, user_id) -> list[str]:
    result = await db.execute(
        select(PaymentMethod.id).where(
            PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True)
        )
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
class TestPaymentMethods:
    async def test_first_card_becomes_default(self, db_session, make):
        buyer = await make.buyer()

        method = await add_payment_method(_card(), buyer.id, db_session)

        assert method.is_default is True
        user_settings = await get_buyer_settings(db_session, buyer.id)
        assert user_settings.default_payment_method_id == method.id

    async def test_second_card_is_not_default_unless_asked(self, db_session, make):
        buyer = await make.buyer()
        first = await add_payment_method(_card("1111"), buyer.id, db_session)
        second = await add_payment_method(_card("2222"), buyer.id, db_session)

        assert await _defaults(db_session, buyer.id) == [first.id]
        assert second.is_default is False

    async def test_at_most_one_default_after_any_sequence(self, db_session, make):
        buyer = await make.buyer()
        methods = [
            await add_payment_method(_card(f"{i:04d}"), buyer.id, db_session) for i in range(4)
        ]

        for index in (2, 0, 3, 3, 1):
            await set_default_payment_method(buyer.id, methods[index].id, db_session)
            assert await _defaults(db_session, buyer.id) == [methods[index].id]

        third = await add_payment_method(_card("9999", set_as_default=True), buyer.id, db_session)
        assert await _defaults(db_session, buyer.id) == [third.id]
        user_settings = await get_buyer_settings(db_session, buyer.id)
        assert user_settings.default_payment_method_id == third.id

    async def test_cannot_default_someone_elses_card(self, db_session, make):
        buyer = await make.buyer()
        other = await make.buyer()
        foreign = await make.payment_method(other)

        with pytest.raises(ResourceNotFoundError):
            await set_default_payment_method(buyer.id, foreign.id, db_session)

    async def test_remove_in_use_is_refused(self, db_session, make):
        buyer = await make.buyer()
        method = await make.payment_method(buyer)
        await make.recurring_contract(buyer, payment_method_id=method.id)

        with pytest.raises(BusinessLogicError):
            await remove_payment_method(buyer.id, method.id, db_session)

    async def test_removing_default_disables_auto_pay(self, db_session, make):
        buyer = await make.buyer()
        method = await add_payment_method(_card(), buyer.id, db_session)
        await update_recurring_settings(
            RecurringSettingsUpdate(auto_pay_enabled=True), buyer.id, db_session
        )

        await remove_payment_method(buyer.id, method.id, db_session)

        user_settings = await get_buyer_settings(db_session, buyer.id)
        assert user_settings.auto_pay_enabled is False
        assert user_settings.default_payment_method_id is None
        assert await db_session.get(PaymentMethod, method.id) is None


def test_notice_days_bounds():
    with pytest.raises(ValidationError):
        RecurringSettingsUpdate(advance_notice_days=0)
    with pytest.raises(ValidationError):
        RecurringSettingsUpdate(advance_notice_days=31)


@pytest.mark.asyncio
class TestRecurringSettings:
    async def test_partial_update(self, db_session, make):
        buyer = await make.buyer()

        updated = await update_recurring_settings(
            RecurringSettingsUpdate(advance_notice_days=7), buyer.id, db_session
        )

        assert updated.advance_notice_days == 7
        assert updated.email_notifications is True
        assert updated.sms_notifications is False

    async def test_explicit_nulls_are_ignored(self, db_session, make):
        buyer = await make.buyer()
        await make.settings(buyer, advance_notice_days=5, email_notifications=False)

        updated = await update_recurring_settings(
            RecurringSettingsUpdate.model_validate(
                {"advance_notice_days": None, "email_notifications": None, "sms_notifications": True}
            ),
            buyer.id,
            db_session,
        )

        assert updated.advance_notice_days == 5
        assert updated.email_notifications is False
        assert updated.sms_notifications is True

    async def test_auto_pay_requires_default_method(self, db_session, make):
        buyer = await make.buyer()

        with pytest.raises(BusinessLogicError):
            await update_recurring_settings(
                RecurringSettingsUpdate(auto_pay_enabled=True), buyer.id, db_session
            )

    async def test_setting_default_through_settings(self, db_session, make):
        buyer = await make.buyer()
        first = await add_payment_method(_card("1111"), buyer.id, db_session)
        second = await add_payment_method(_card("2222"), buyer.id, db_session)

        await update_recurring_settings(
            RecurringSettingsUpdate(default_payment_method_id=second.id), buyer.id, db_session
        )

        assert await _defaults(db_session, buyer.id) == [second.id]
        assert first.id != second.id


@pytest.mark.asyncio
class TestContractSettings:
    async def test_update_recurring_contract(self, db_session, make):
        buyer = await make.buyer()
        method = await make.payment_method(buyer)
        contract = await make.recurring_contract(buyer)

        updated = await update_contract_payment_settings(
            contract.id,
            ContractPaymentSettingsUpdate(
                auto_pay_enabled=True, payment_method_id=method.id, notification_days=5
            ),
            buyer.id,
            db_session,
        )

        assert updated.auto_pay_enabled is True
        assert updated.payment_method_id == method.id
        assert updated.notification_days == 5

    async def test_null_clears_method_but_not_flags(self, db_session, make):
        buyer = await make.buyer()
        method = await make.payment_method(buyer)
        contract = await make.recurring_contract(
            buyer, auto_pay_enabled=True, payment_method_id=method.id, notification_days=5
        )

        updated = await update_contract_payment_settings(
            contract.id,
            ContractPaymentSettingsUpdate.model_validate(
                {"auto_pay_enabled": None, "notify_before_charge": None,
                 "payment_method_id": None, "notification_days": None}
            ),
            buyer.id,
            db_session,
        )

        assert updated.auto_pay_enabled is True
        assert updated.notify_before_charge is True
        assert updated.payment_method_id is None
        assert updated.notification_days is None

    async def test_one_off_contract_refused(self, db_session, make):
        buyer = await make.buyer()
        contract = await make.contract(buyer)

        with pytest.raises(BusinessLogicError):
            await update_contract_payment_settings(
                contract.id, ContractPaymentSettingsUpdate(auto_pay_enabled=True), buyer.id, db_session
            )


@pytest.mark.asyncio
class TestSelectWinningFulfillment:
    async def test_single_winner(self, db_session, make):
        buyer = await make.buyer()
        contract = await make.recurring_contract(buyer, status="open")
        farmers = [await make.farmer() for _ in range(3)]
        offers = [
            await make.fulfillment(contract, farmer, winning=False, price=Decimal(p))
            for farmer, p in zip(farmers, ("9.00", "8.50", "9.50"))
        ]

        await select_winning_fulfillment(contract.id, offers[0].id, buyer.id, db_session)
        await select_winning_fulfillment(contract.id, offers[1].id, buyer.id, db_session)

        result = await db_session.execute(
            select(Fulfillment).where(Fulfillment.contract_id == contract.id)
        )
        by_id = {f.id: f for f in result.scalars().all()}
        assert [f.id for f in by_id.values() if f.is_winning] == [offers[1].id]
        assert by_id[offers[1].id].status == "accepted"
        assert by_id[offers[0].id].status == "rejected"
        assert by_id[offers[2].id].status == "rejected"

        refreshed = await db_session.get(Contract, contract.id)
        assert refreshed.status == "active"
        assert refreshed.winning_fulfillment.id == offers[1].id

    async def test_instance_becomes_fulfilled(self, db_session, make):
        buyer = await make.buyer()
        farmer = await make.farmer()
        instance = await make.contract(buyer, end_time=datetime(2024, 2, 1))
        offer = await make.fulfillment(instance, farmer, winning=False)

        await select_winning_fulfillment(instance.id, offer.id, buyer.id, db_session)

        assert (await db_session.get(Contract, instance.id)).status == "fulfilled"
