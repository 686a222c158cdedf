"""Contract: a buyer's open or recurring order for farm produce.

One table holds both recurring parents (`is_recurring=True`, no parent)
and the one-off instances the recurrence engine spawns from them
(`parent_contract_id` set).  Each spawn is also recorded as a
RecurringInstance lineage row on the parent.

Lifecycle:  open → pending_fulfillment → fulfilled | active → completed
            (cancelled / expired at any point)
Payment:    pending → processing → completed | failed   (per cycle)
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    JSON, Numeric, String, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from farmbid.database import Base
from farmbid.utils.clock import utcnow

ACTIVE_STATUSES = ("active", "fulfilled")


class Contract(Base):
    __tablename__ = "contracts"
    __table_args__ = (
        CheckConstraint(
            "parent_contract_id IS NULL OR parent_contract_id <> id",
            name="ck_contracts_parent_not_self",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    buyer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    title: Mapped[str | None] = mapped_column(String(255))

    # ── Terms ────────────────────────────────────────────────
    product_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    product_category: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    max_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # buyer_pickup | farmer_delivery | third_party
    delivery_method: Mapped[str] = mapped_column(String(30), nullable=False)
    # {"street": ..., "city": ..., "state": ..., "zip_code": ...}
    delivery_address: Mapped[dict | None] = mapped_column(JSON)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # open | pending_fulfillment | fulfilled | active | completed | cancelled | expired
    status: Mapped[str] = mapped_column(String(30), default="open", index=True)

    # ── Recurrence ───────────────────────────────────────────
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    # weekly | biweekly | monthly | quarterly | biannually | annually
    recurring_frequency: Mapped[str | None] = mapped_column(String(20))
    next_delivery_date: Mapped[datetime | None] = mapped_column(DateTime, index=True)
    next_payment_date: Mapped[datetime | None] = mapped_column(DateTime, index=True)
    last_payment_date: Mapped[datetime | None] = mapped_column(DateTime)
    recurring_end_date: Mapped[datetime | None] = mapped_column(DateTime)
    current_cycle: Mapped[int] = mapped_column(Integer, default=0)
    parent_contract_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("contracts.id"), index=True
    )
    # Farmer ids already told about this contract; append-only
    notified_farmers: Mapped[list] = mapped_column(JSON, default=list)

    # ── Payment settings ─────────────────────────────────────
    auto_pay_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    payment_method_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_methods.id")
    )
    notify_before_charge: Mapped[bool] = mapped_column(Boolean, default=True)
    notification_days: Mapped[int | None] = mapped_column(Integer)

    # ── Payment state ────────────────────────────────────────
    # pending | processing | completed | failed
    payment_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    # The cycle that payment_status refers to
    payment_cycle: Mapped[int | None] = mapped_column(Integer)

    # ── Reminder bookkeeping ─────────────────────────────────
    payment_reminder_sent_for: Mapped[datetime | None] = mapped_column(DateTime)
    # Smallest renewal mark (days) already announced for renewal_notice_for
    renewal_notice_mark: Mapped[int | None] = mapped_column(Integer)
    renewal_notice_for: Mapped[datetime | None] = mapped_column(DateTime)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version_id}

    # ── Relationships ────────────────────────────────────────
    buyer = relationship("User", lazy="selectin")
    payment_method = relationship("PaymentMethod", lazy="selectin")
    fulfillments = relationship(
        "Fulfillment", back_populates="contract", lazy="selectin",
        cascade="all, delete-orphan",
    )
    recurring_instances = relationship(
        "RecurringInstance",
        back_populates="parent",
        lazy="selectin",
        order_by="RecurringInstance.instance_number",
        foreign_keys="RecurringInstance.parent_contract_id",
        cascade="all, delete-orphan",
    )

    @property
    def winning_fulfillment(self) -> "Fulfillment | None":
        for f in self.fulfillments:
            if f.is_winning and f.status == "accepted":
                return f
        return None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def cycle_settled(self) -> bool:
        """True when the current cycle's payment is in flight or done."""
        return (
            self.payment_status in ("processing", "completed")
            and self.payment_cycle == self.current_cycle
        )


class RecurringInstance(Base):
    """Lineage record: one row per instance spawned from a recurring parent."""

    __tablename__ = "recurring_instances"
    __table_args__ = (
        UniqueConstraint("parent_contract_id", "instance_number"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    parent_contract_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("contracts.id"), nullable=False, index=True
    )
    instance_number: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # active | completed | cancelled
    status: Mapped[str] = mapped_column(String(20), default="active")
    # The spawned instance contract
    fulfillment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("contracts.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    parent = relationship(
        "Contract", back_populates="recurring_instances",
        foreign_keys=[parent_contract_id],
    )


class Fulfillment(Base):
    """A farmer's offer to supply a contract."""

    __tablename__ = "fulfillments"
    __table_args__ = (
        # At most one winner per contract
        Index(
            "uq_fulfillments_one_winner",
            "contract_id",
            unique=True,
            postgresql_where=text("is_winning"),
            sqlite_where=text("is_winning"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    contract_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("contracts.id"), nullable=False, index=True
    )
    farmer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    delivery_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    delivery_method: Mapped[str | None] = mapped_column(String(30))
    estimated_delivery_date: Mapped[datetime | None] = mapped_column(DateTime)

    # pending | accepted | rejected
    status: Mapped[str] = mapped_column(String(20), default="pending")
    is_winning: Mapped[bool] = mapped_column(Boolean, default=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    contract = relationship("Contract", back_populates="fulfillments")
