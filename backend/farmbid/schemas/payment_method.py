"""Pydantic schemas for saved payment methods and recurring payment settings."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator


class CardDetails(BaseModel):
    brand: str
    last4: str
    exp_month: int = Field(ge=1, le=12)
    exp_year: int

    @field_validator("last4")
    @classmethod
    def four_digits(cls, v: str) -> str:
        if len(v) != 4 or not v.isdigit():
            raise ValueError("last4 must be exactly 4 digits")
        return v


class PaymentMethodCreate(BaseModel):
    gateway_token: str
    card: CardDetails
    set_as_default: bool = False


class RecurringSettingsUpdate(BaseModel):
    auto_pay_enabled: bool | None = None
    email_notifications: bool | None = None
    sms_notifications: bool | None = None
    advance_notice_days: int | None = Field(default=None, ge=1, le=30)
    default_payment_method_id: str | None = None


class ContractPaymentSettingsUpdate(BaseModel):
    auto_pay_enabled: bool | None = None
    payment_method_id: str | None = None
    notify_before_charge: bool | None = None
    notification_days: int | None = Field(default=None, ge=1, le=30)


class PaymentMethodOut(BaseModel):
    id: str
    brand: str
    last4: str
    exp_month: int
    exp_year: int
    is_default: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class RecurringSettingsOut(BaseModel):
    auto_pay_enabled: bool
    email_notifications: bool
    sms_notifications: bool
    advance_notice_days: int
    default_payment_method_id: str | None = None

    model_config = {"from_attributes": True}


class ContractPaymentSettingsOut(BaseModel):
    id: str
    auto_pay_enabled: bool
    payment_method_id: str | None = None
    notify_before_charge: bool
    notification_days: int | None = None
    next_payment_date: datetime | None = None
    payment_status: str

    model_config = {"from_attributes": True}


class WinningFulfillmentSelect(BaseModel):
    fulfillment_id: str


class FulfillmentOut(BaseModel):
    id: str
    contract_id: str
    farmer_id: str
    price: Decimal
    quantity: Decimal
    delivery_fee: Decimal | None = None
    status: str
    is_winning: bool
    accepted_at: datetime | None = None

    model_config = {"from_attributes": True}
