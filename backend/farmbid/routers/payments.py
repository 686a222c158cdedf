"""Saved payment methods and recurring payment settings.

Endpoints:
    GET    /api/payments/methods                        List the user's cards
    POST   /api/payments/methods                        Save a tokenized card
    PUT    /api/payments/methods/{id}/default           Make a card the default
    DELETE /api/payments/methods/{id}                   Remove a card
    GET    /api/payments/settings                       Recurring payment settings
    PATCH  /api/payments/settings                       Update them
    PATCH  /api/payments/contracts/{id}/settings        Per-contract payment settings
    POST   /api/payments/contracts/{id}/winner          Accept one fulfillment

Every endpoint acts for the user named by `X-User-Id` (see auth/deps.py).
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from farmbid.auth.deps import get_acting_user
from farmbid.database import get_db
from farmbid.models.user import User
from farmbid.schemas.payment_method import (
    ContractPaymentSettingsOut,
    ContractPaymentSettingsUpdate,
    FulfillmentOut,
    PaymentMethodCreate,
    PaymentMethodOut,
    RecurringSettingsOut,
    RecurringSettingsUpdate,
    WinningFulfillmentSelect,
)
from farmbid.services import payment_methods as service

router = APIRouter()


# ── Payment methods ──────────────────────────────────────────

@router.get("/methods", response_model=list[PaymentMethodOut])
async def list_methods(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_acting_user),
):
    return await service.list_payment_methods(user.id, db)


@router.post("/methods", response_model=PaymentMethodOut, status_code=status.HTTP_201_CREATED)
async def add_method(
    body: PaymentMethodCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_acting_user),
):
    return await service.add_payment_method(body, user.id, db)


@router.put("/methods/{method_id}/default", response_model=PaymentMethodOut)
async def set_default_method(
    method_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_acting_user),
):
    return await service.set_default_payment_method(user.id, method_id, db)


@router.delete("/methods/{method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_method(
    method_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_acting_user),
):
    await service.remove_payment_method(user.id, method_id, db)


# ── Settings ─────────────────────────────────────────────────

@router.get("/settings", response_model=RecurringSettingsOut)
async def get_settings(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_acting_user),
):
    return await service.get_recurring_settings(user.id, db)


@router.patch("/settings", response_model=RecurringSettingsOut)
async def update_settings(
    body: RecurringSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_acting_user),
):
    return await service.update_recurring_settings(body, user.id, db)


@router.patch("/contracts/{contract_id}/settings", response_model=ContractPaymentSettingsOut)
async def update_contract_settings(
    contract_id: str,
    body: ContractPaymentSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_acting_user),
):
    return await service.update_contract_payment_settings(contract_id, body, user.id, db)


@router.post("/contracts/{contract_id}/winner", response_model=FulfillmentOut)
async def select_winner(
    contract_id: str,
    body: WinningFulfillmentSelect,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_acting_user),
):
    """Accept `fulfillment_id` for the contract and reject the other offers."""
    return await service.select_winning_fulfillment(contract_id, body.fulfillment_id, user.id, db)
