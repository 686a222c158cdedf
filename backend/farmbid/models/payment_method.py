"""PaymentMethod: a saved, tokenized card bound to a user and a gateway token."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from farmbid.database import Base
from farmbid.utils.clock import utcnow


class PaymentMethod(Base):
    __tablename__ = "payment_methods"
    __table_args__ = (
        # At most one default per user
        Index(
            "uq_payment_methods_one_default",
            "user_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    # Gateway token (Stripe "pm_...")
    gateway_token: Mapped[str] = mapped_column(String(255), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

    # ── Card metadata ────────────────────────────────────────
    brand: Mapped[str] = mapped_column(String(30), nullable=False)
    last4: Mapped[str] = mapped_column(String(4), nullable=False)
    exp_month: Mapped[int] = mapped_column(Integer, nullable=False)
    exp_year: Mapped[int] = mapped_column(Integer, nullable=False)

    # "YYYY-MM" of the last expiration notice sent for this card
    expiry_notified_for: Mapped[str | None] = mapped_column(String(7))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user = relationship("User", lazy="selectin")

    @property
    def label(self) -> str:
        return f"{self.brand} ending in {self.last4}"
