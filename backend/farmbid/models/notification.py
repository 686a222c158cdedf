import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from farmbid.database import Base
from farmbid.utils.clock import utcnow


class Notification(Base):
    """In-app notification, plus the outcome of each extra delivery channel."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    # payment_success | payment_failed | payment_reminder | contract_renewal | ...
    type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON)

    # ["in_app", "sms", "email"]
    channels: Mapped[list] = mapped_column(JSON, default=list)
    # {"sms": {"success": true}, "email": {"success": false, "error": "..."}}
    delivery: Mapped[dict | None] = mapped_column(JSON)

    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
