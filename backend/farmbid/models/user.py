import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from farmbid.database import Base
from farmbid.utils.clock import utcnow


class UserRole(str, enum.Enum):
    BUYER = "buyer"
    FARMER = "farmer"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # E.164, used for SMS delivery
    phone: Mapped[str | None] = mapped_column(String(20))
    role: Mapped[UserRole] = mapped_column(SAEnum(UserRole), default=UserRole.BUYER)

    # Gateway customer token (Stripe "cus_...")
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    products = relationship(
        "FarmerProduct", back_populates="farmer", lazy="selectin",
        cascade="all, delete-orphan",
    )


class FarmerProduct(Base):
    """An entry in a farmer's catalog; drives new-contract fan-out."""

    __tablename__ = "farmer_products"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    farmer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String(100))

    farmer = relationship("User", back_populates="products")
