"""ORM models.

Importing this package registers every table on Base.metadata
(used by Alembic and `cli create-tables`).
"""

# ── Parties ──────────────────────────────────────────────────
from farmbid.models.user import FarmerProduct, User, UserRole

# ── Contracts ────────────────────────────────────────────────
from farmbid.models.contract import Contract, Fulfillment, RecurringInstance

# ── Payments ─────────────────────────────────────────────────
from farmbid.models.payment_method import PaymentMethod
from farmbid.models.recurring_settings import RecurringPaymentSettings
from farmbid.models.transaction import Transaction

# ── Messaging ────────────────────────────────────────────────
from farmbid.models.notification import Notification

__all__ = [
    "User", "UserRole", "FarmerProduct",
    "Contract", "Fulfillment", "RecurringInstance",
    "PaymentMethod", "RecurringPaymentSettings", "Transaction",
    "Notification",
]
