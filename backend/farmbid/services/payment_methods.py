"""Payment-method and recurring-settings management.

Each function works inside the caller's session and commits on success.

  - Default handling: every other default for the owner is cleared and
    flushed before the new one is set, all in one transaction, so the
    one-default-per-user index never sees two.
  - The settings row mirrors the default in `default_payment_method_id`.
  - A method still backing an active recurring contract cannot be removed.
"""

import logging

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from farmbid.config import settings
from farmbid.database import commit_versioned
from farmbid.middleware.exceptions import BusinessLogicError, ResourceNotFoundError
from farmbid.models.contract import ACTIVE_STATUSES, Contract, Fulfillment
from farmbid.models.payment_method import PaymentMethod
from farmbid.models.recurring_settings import RecurringPaymentSettings
from farmbid.schemas.payment_method import (
    ContractPaymentSettingsUpdate,
    PaymentMethodCreate,
    RecurringSettingsUpdate,
)
from farmbid.services.payments import get_buyer_settings
from farmbid.utils.clock import utcnow

logger = logging.getLogger("farmbid.payment_methods")


async def _get_owned_method(db: AsyncSession, user_id: str, method_id: str) -> PaymentMethod:
    method = await db.get(PaymentMethod, method_id)
    if method is None or method.user_id != user_id:
        raise ResourceNotFoundError("PaymentMethod", method_id)
    return method


async def _get_or_create_settings(db: AsyncSession, user_id: str) -> RecurringPaymentSettings:
    row = await get_buyer_settings(db, user_id)
    if row is None:
        row = RecurringPaymentSettings(user_id=user_id)
        db.add(row)
    return row


async def _make_default(db: AsyncSession, user_id: str, method: PaymentMethod) -> None:
    await db.execute(
        update(PaymentMethod)
        .where(
            PaymentMethod.user_id == user_id,
            PaymentMethod.id != method.id,
            PaymentMethod.is_default.is_(True),
        )
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )
    await db.flush()
    method.is_default = True
    user_settings = await _get_or_create_settings(db, user_id)
    user_settings.default_payment_method_id = method.id


async def list_payment_methods(user_id: str, db: AsyncSession) -> list[PaymentMethod]:
    result = await db.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at)
    )
    return list(result.scalars().all())


async def get_recurring_settings(user_id: str, db: AsyncSession) -> RecurringPaymentSettings:
    """The user's settings row, or an unsaved one holding the defaults."""
    row = await get_buyer_settings(db, user_id)
    if row is None:
        row = RecurringPaymentSettings(
            user_id=user_id,
            auto_pay_enabled=False,
            email_notifications=True,
            sms_notifications=False,
            advance_notice_days=settings.default_advance_notice_days,
        )
    return row


async def add_payment_method(
    body: PaymentMethodCreate,
    user_id: str,
    db: AsyncSession,
) -> PaymentMethod:
    """Save a tokenized card.  The user's first card becomes the default."""
    existing = (
        await db.execute(
            select(PaymentMethod.id).where(PaymentMethod.user_id == user_id).limit(1)
        )
    ).scalar_one_or_none()

    method = PaymentMethod(
        user_id=user_id,
        gateway_token=body.gateway_token,
        brand=body.card.brand,
        last4=body.card.last4,
        exp_month=body.card.exp_month,
        exp_year=body.card.exp_year,
        is_default=False,
    )
    db.add(method)
    await db.flush()

    if body.set_as_default or existing is None:
        await _make_default(db, user_id, method)

    await db.commit()
    logger.info("User %s added payment method %s (%s)", user_id, method.id, method.label)
    return method


async def set_default_payment_method(
    user_id: str,
    method_id: str,
    db: AsyncSession,
) -> PaymentMethod:
    method = await _get_owned_method(db, user_id, method_id)
    await _make_default(db, user_id, method)
    await db.commit()
    logger.info("User %s set default payment method %s", user_id, method_id)
    return method


async def remove_payment_method(
    user_id: str,
    method_id: str,
    db: AsyncSession,
) -> None:
    """Delete a saved card.  Removing the default turns buyer-wide auto-pay off."""
    method = await _get_owned_method(db, user_id, method_id)

    in_use = (
        await db.execute(
            select(Contract.id)
            .where(
                Contract.buyer_id == user_id,
                Contract.payment_method_id == method_id,
                Contract.status.in_(ACTIVE_STATUSES + ("open",)),
                or_(Contract.is_recurring.is_(True), Contract.parent_contract_id.is_not(None)),
            )
            .limit(1)
        )
    ).scalar_one_or_none()
    if in_use is not None:
        raise BusinessLogicError(
            "Payment method is used by an active recurring contract",
            error_code="PAYMENT_METHOD_IN_USE",
        )

    user_settings = await get_buyer_settings(db, user_id)
    if user_settings is not None and (
        method.is_default or user_settings.default_payment_method_id == method_id
    ):
        user_settings.default_payment_method_id = None
        user_settings.auto_pay_enabled = False
        logger.info("User %s removed default payment method; auto-pay disabled", user_id)
        await db.flush()

    await db.delete(method)
    await db.commit()


async def update_recurring_settings(
    body: RecurringSettingsUpdate,
    user_id: str,
    db: AsyncSession,
) -> RecurringPaymentSettings:
    user_settings = await _get_or_create_settings(db, user_id)
    # An explicit null leaves the setting unchanged
    changes = body.model_dump(exclude_unset=True, exclude_none=True)

    if changes.get("default_payment_method_id"):
        method = await _get_owned_method(db, user_id, changes.pop("default_payment_method_id"))
        await _make_default(db, user_id, method)

    for field, value in changes.items():
        setattr(user_settings, field, value)

    if user_settings.auto_pay_enabled:
        has_default = user_settings.default_payment_method_id or (
            await db.execute(
                select(PaymentMethod.id).where(
                    PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True)
                )
            )
        ).scalar_one_or_none()
        if not has_default:
            raise BusinessLogicError(
                "A default payment method is required to enable auto-pay",
                error_code="NO_PAYMENT_METHOD",
            )

    await db.commit()
    return user_settings


async def update_contract_payment_settings(
    contract_id: str,
    body: ContractPaymentSettingsUpdate,
    user_id: str,
    db: AsyncSession,
) -> Contract:
    contract = await db.get(Contract, contract_id)
    if contract is None or contract.buyer_id != user_id:
        raise ResourceNotFoundError("Contract", contract_id)
    if not contract.is_recurring and contract.parent_contract_id is None:
        raise BusinessLogicError(
            "Payment settings apply to recurring contracts only",
            error_code="NOT_RECURRING",
        )

    changes = body.model_dump(exclude_unset=True)
    # Null clears the contract-level method and notice days, never the flags
    for flag in ("auto_pay_enabled", "notify_before_charge"):
        if changes.get(flag, False) is None:
            del changes[flag]
    if changes.get("payment_method_id"):
        await _get_owned_method(db, user_id, changes["payment_method_id"])
    for field, value in changes.items():
        setattr(contract, field, value)

    await commit_versioned(db, "Contract", contract_id)
    return contract


async def select_winning_fulfillment(
    contract_id: str,
    fulfillment_id: str,
    user_id: str,
    db: AsyncSession,
) -> Fulfillment:
    """Accept one fulfillment and reject the rest."""
    contract = await db.get(Contract, contract_id)
    if contract is None or contract.buyer_id != user_id:
        raise ResourceNotFoundError("Contract", contract_id)

    winner = next((f for f in contract.fulfillments if f.id == fulfillment_id), None)
    if winner is None:
        raise ResourceNotFoundError("Fulfillment", fulfillment_id)
    if contract.status in ("completed", "cancelled", "expired"):
        raise BusinessLogicError(
            f"Cannot select a fulfillment on a {contract.status} contract",
            error_code="CONTRACT_CLOSED",
        )

    for other in contract.fulfillments:
        if other.id != winner.id and (other.is_winning or other.status != "rejected"):
            other.is_winning = False
            other.status = "rejected"
    await db.flush()

    winner.is_winning = True
    winner.status = "accepted"
    winner.accepted_at = utcnow()
    contract.status = "active" if contract.is_recurring else "fulfilled"

    await commit_versioned(db, "Contract", contract_id)
    logger.info("Contract %s: fulfillment %s selected", contract_id, fulfillment_id)
    return winner
