"""Transaction: an attempted or completed recurring charge.

A failed charge is never overwritten by its retries: each retry is a new
row (`type="recurring_payment_retry"`) pointing back through
`original_transaction_id`, while the original only gains retry-tracking
metadata (`retry_count`, `last_retry_date`, `retry_transaction_id`,
`resolved_by`).

Lifecycle:  pending → processing → succeeded | failed
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from farmbid.database import Base
from farmbid.utils.clock import utcnow


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Links ────────────────────────────────────────────────
    buyer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    seller_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    contract_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("contracts.id"), nullable=False, index=True
    )
    fulfillment_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("fulfillments.id")
    )
    payment_method_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_methods.id")
    )

    # ── Amounts ──────────────────────────────────────────────
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # ── Gateway ──────────────────────────────────────────────
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    # pending | processing | succeeded | failed
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    # recurring_payment | recurring_payment_retry
    type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    # Contract cycle this charge pays for
    cycle: Mapped[int] = mapped_column(Integer, default=0)

    # ── Retry tracking ───────────────────────────────────────
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    last_retry_date: Mapped[datetime | None] = mapped_column(DateTime)
    # retry | reconciliation | superseded
    resolved_by: Mapped[str | None] = mapped_column(String(20))
    retry_transaction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("transactions.id")
    )
    original_transaction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("transactions.id"), index=True
    )
    retry_number: Mapped[int | None] = mapped_column(Integer)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version_id}

    contract = relationship("Contract", lazy="selectin")

    @property
    def amount_minor(self) -> int:
        """Amount in minor currency units (cents)."""
        return int(self.amount * 100)
