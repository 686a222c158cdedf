import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from farmbid.database import Base
from farmbid.utils.clock import utcnow


class RecurringPaymentSettings(Base):
    """Per-user defaults for automatic recurring payments."""

    __tablename__ = "recurring_payment_settings"
    __table_args__ = (
        CheckConstraint(
            "advance_notice_days BETWEEN 1 AND 30",
            name="ck_recurring_settings_notice_days",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), unique=True, nullable=False
    )
    auto_pay_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    # ── Notification preferences ─────────────────────────────
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    sms_notifications: Mapped[bool] = mapped_column(Boolean, default=False)
    advance_notice_days: Mapped[int] = mapped_column(Integer, default=3)

    default_payment_method_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_methods.id")
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    def channels(self) -> list[str]:
        """Delivery channels the user opted into (in-app is always on)."""
        channels = ["in_app"]
        if self.email_notifications:
            channels.append("email")
        if self.sms_notifications:
            channels.append("sms")
        return channels
