"""Initial schema: users, contracts, payments, notifications.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-17

Run with:
    alembic upgrade head
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    # ── Parties ──────────────────────────────────────────────

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20)),
        sa.Column(
            "role",
            sa.Enum("BUYER", "FARMER", "ADMIN", name="userrole"),
            server_default="BUYER",
        ),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "farmer_products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("farmer_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("category", sa.String(100)),
    )
    op.create_index("ix_farmer_products_farmer_id", "farmer_products", ["farmer_id"])
    op.create_index("ix_farmer_products_name", "farmer_products", ["name"])

    # ── Payment instruments ──────────────────────────────────

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("gateway_token", sa.String(255), nullable=False),
        sa.Column("is_default", sa.Boolean(), server_default="false"),
        sa.Column("brand", sa.String(30), nullable=False),
        sa.Column("last4", sa.String(4), nullable=False),
        sa.Column("exp_month", sa.Integer(), nullable=False),
        sa.Column("exp_year", sa.Integer(), nullable=False),
        sa.Column("expiry_notified_for", sa.String(7)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_payment_methods_user_id", "payment_methods", ["user_id"])
    op.create_index(
        "uq_payment_methods_one_default",
        "payment_methods",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "recurring_payment_settings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("auto_pay_enabled", sa.Boolean(), server_default="false"),
        sa.Column("email_notifications", sa.Boolean(), server_default="true"),
        sa.Column("sms_notifications", sa.Boolean(), server_default="false"),
        sa.Column("advance_notice_days", sa.Integer(), server_default="3"),
        sa.Column(
            "default_payment_method_id", sa.String(36), sa.ForeignKey("payment_methods.id")
        ),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint(
            "advance_notice_days BETWEEN 1 AND 30",
            name="ck_recurring_settings_notice_days",
        ),
    )

    # ── Contracts ────────────────────────────────────────────

    op.create_table(
        "contracts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("buyer_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(255)),
        # Terms
        sa.Column("product_type", sa.String(100), nullable=False),
        sa.Column("product_category", sa.String(100), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("delivery_method", sa.String(30), nullable=False),
        sa.Column("delivery_address", sa.JSON()),
        sa.Column("end_time", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(30), server_default="open"),
        # Recurrence
        sa.Column("is_recurring", sa.Boolean(), server_default="false"),
        sa.Column("recurring_frequency", sa.String(20)),
        sa.Column("next_delivery_date", sa.DateTime()),
        sa.Column("next_payment_date", sa.DateTime()),
        sa.Column("last_payment_date", sa.DateTime()),
        sa.Column("recurring_end_date", sa.DateTime()),
        sa.Column("current_cycle", sa.Integer(), server_default="0"),
        sa.Column("parent_contract_id", sa.String(36), sa.ForeignKey("contracts.id")),
        sa.Column("notified_farmers", sa.JSON(), server_default="[]"),
        # Payment settings
        sa.Column("auto_pay_enabled", sa.Boolean(), server_default="false"),
        sa.Column("payment_method_id", sa.String(36), sa.ForeignKey("payment_methods.id")),
        sa.Column("notify_before_charge", sa.Boolean(), server_default="true"),
        sa.Column("notification_days", sa.Integer()),
        # Payment state
        sa.Column("payment_status", sa.String(20), server_default="pending"),
        sa.Column("payment_cycle", sa.Integer()),
        # Reminder bookkeeping
        sa.Column("payment_reminder_sent_for", sa.DateTime()),
        sa.Column("renewal_notice_mark", sa.Integer()),
        sa.Column("renewal_notice_for", sa.DateTime()),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint(
            "parent_contract_id IS NULL OR parent_contract_id <> id",
            name="ck_contracts_parent_not_self",
        ),
    )
    op.create_index("ix_contracts_buyer_id", "contracts", ["buyer_id"])
    op.create_index("ix_contracts_product_type", "contracts", ["product_type"])
    op.create_index("ix_contracts_status", "contracts", ["status"])
    op.create_index("ix_contracts_is_recurring", "contracts", ["is_recurring"])
    op.create_index("ix_contracts_next_delivery_date", "contracts", ["next_delivery_date"])
    op.create_index("ix_contracts_next_payment_date", "contracts", ["next_payment_date"])
    op.create_index("ix_contracts_parent_contract_id", "contracts", ["parent_contract_id"])
    op.create_index("ix_contracts_payment_status", "contracts", ["payment_status"])

    op.create_table(
        "fulfillments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("contract_id", sa.String(36), sa.ForeignKey("contracts.id"), nullable=False),
        sa.Column("farmer_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 2), nullable=False),
        sa.Column("delivery_fee", sa.Numeric(12, 2)),
        sa.Column("delivery_method", sa.String(30)),
        sa.Column("estimated_delivery_date", sa.DateTime()),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("is_winning", sa.Boolean(), server_default="false"),
        sa.Column("accepted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_fulfillments_contract_id", "fulfillments", ["contract_id"])
    op.create_index("ix_fulfillments_farmer_id", "fulfillments", ["farmer_id"])
    op.create_index(
        "uq_fulfillments_one_winner",
        "fulfillments",
        ["contract_id"],
        unique=True,
        postgresql_where=sa.text("is_winning"),
    )

    op.create_table(
        "recurring_instances",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "parent_contract_id", sa.String(36), sa.ForeignKey("contracts.id"), nullable=False
        ),
        sa.Column("instance_number", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column(
            "fulfillment_id", sa.String(36), sa.ForeignKey("contracts.id"), nullable=False
        ),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("parent_contract_id", "instance_number"),
    )
    op.create_index(
        "ix_recurring_instances_parent_contract_id",
        "recurring_instances",
        ["parent_contract_id"],
    )

    # ── Transactions ─────────────────────────────────────────

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("buyer_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("contract_id", sa.String(36), sa.ForeignKey("contracts.id"), nullable=False),
        sa.Column("fulfillment_id", sa.String(36), sa.ForeignKey("fulfillments.id")),
        sa.Column("payment_method_id", sa.String(36), sa.ForeignKey("payment_methods.id")),
        # Amounts
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(12, 2), server_default="0"),
        sa.Column("delivery_fee", sa.Numeric(12, 2), server_default="0"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        # Gateway
        sa.Column("payment_intent_id", sa.String(255)),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("cycle", sa.Integer(), server_default="0"),
        # Retry tracking
        sa.Column("retry_count", sa.Integer(), server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("last_retry_date", sa.DateTime()),
        sa.Column("resolved_by", sa.String(20)),
        sa.Column("retry_transaction_id", sa.String(36), sa.ForeignKey("transactions.id")),
        sa.Column("original_transaction_id", sa.String(36), sa.ForeignKey("transactions.id")),
        sa.Column("retry_number", sa.Integer()),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_transactions_buyer_id", "transactions", ["buyer_id"])
    op.create_index("ix_transactions_seller_id", "transactions", ["seller_id"])
    op.create_index("ix_transactions_contract_id", "transactions", ["contract_id"])
    op.create_index("ix_transactions_payment_intent_id", "transactions", ["payment_intent_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_type", "transactions", ["type"])
    op.create_index(
        "ix_transactions_original_transaction_id", "transactions", ["original_transaction_id"]
    )
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])

    # ── Messaging ────────────────────────────────────────────

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON()),
        sa.Column("channels", sa.JSON(), server_default="[]"),
        sa.Column("delivery", sa.JSON()),
        sa.Column("read", sa.Boolean(), server_default="false"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_type", "notifications", ["type"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("transactions")
    op.drop_table("recurring_instances")
    op.drop_table("fulfillments")
    op.drop_table("contracts")
    op.drop_table("recurring_payment_settings")
    op.drop_table("payment_methods")
    op.drop_table("farmer_products")
    op.drop_table("users")
    sa.Enum(name="userrole").drop(op.get_bind(), checkfirst=True)
