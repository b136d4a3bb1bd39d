"""create_reservations_tables

Revision ID: b7e2d41c9a10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "b7e2d41c9a10"
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    "trip_availability_enum": ("open", "waitlist", "closed"),
    "checkout_session_status_enum": ("pending", "paid", "expired", "cancelled"),
    "loyalty_txn_type_enum": ("earn", "spend"),
    "order_status_enum": ("draft", "submitted", "confirmed", "cancelled"),
    "invoice_type_enum": ("receipt", "invoice_personal", "invoice_company"),
    "payment_provider_enum": ("gateway", "manual_transfer"),
    "payment_status_enum": ("pending", "paid", "failed", "cancelled", "refunded"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "trips",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(8), nullable=False, server_default="PLN"),
        sa.Column("capacity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("seats_left", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "availability",
            _enum("trip_availability_enum"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("manually_closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("capacity >= 0", name="ck_trips_capacity_non_negative"),
        sa.CheckConstraint(
            "seats_left >= 0 AND seats_left <= capacity",
            name="ck_trips_seats_left_within_capacity",
        ),
    )
    op.create_index("ix_trips_slug", "trips", ["slug"], unique=True)

    op.create_table(
        "trip_departure_points",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "trip_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("trips.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("city", sa.String(128), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index(
        "ix_trip_departure_points_trip_id", "trip_departure_points", ["trip_id"]
    )

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_customers_email", "customers", ["email"], unique=True)

    op.create_table(
        "loyalty_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "customer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customers.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("points_balance >= 0", name="ck_loyalty_balance_non_negative"),
    )

    op.create_table(
        "checkout_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_email", sa.String(320), nullable=False),
        sa.Column(
            "cart_snapshot",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "bound_customer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("points_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            _enum("checkout_session_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("points_reserved >= 0", name="ck_checkout_points_non_negative"),
    )
    op.create_index(
        "ix_checkout_sessions_customer_email", "checkout_sessions", ["customer_email"]
    )
    op.create_index("ix_checkout_sessions_status", "checkout_sessions", ["status"])
    op.create_index("ix_checkout_sessions_expires_at", "checkout_sessions", ["expires_at"])

    op.create_table(
        "magic_link_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("token", sa.String(128), nullable=False),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("checkout_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "customer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_magic_link_tokens_token", "magic_link_tokens", ["token"], unique=True)
    op.create_index("ix_magic_link_tokens_session_id", "magic_link_tokens", ["session_id"])

    op.create_table(
        "orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_number", sa.String(32), nullable=False),
        sa.Column(
            "status",
            _enum("order_status_enum"),
            nullable=False,
            server_default="submitted",
        ),
        sa.Column(
            "checkout_session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("checkout_sessions.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "customer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("customer_email", sa.String(320), nullable=False),
        sa.Column("customer_phone", sa.String(32), nullable=False),
        sa.Column(
            "invoice_type",
            _enum("invoice_type_enum"),
            nullable=False,
            server_default="receipt",
        ),
        sa.Column("company_name", sa.String(255), nullable=True),
        sa.Column("company_tax_id", sa.String(16), nullable=True),
        sa.Column("company_address", sa.String(500), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("discount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="PLN"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders_customer_email", "orders", ["customer_email"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "order_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "trip_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("trips.id"),
            nullable=False,
        ),
        sa.Column(
            "departure_point_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("trip_departure_points.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column(
            "passengers",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_trip_id", "order_items", ["trip_id"])

    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "order_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", _enum("payment_provider_enum"), nullable=False),
        sa.Column(
            "status",
            _enum("payment_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="PLN"),
        sa.Column("external_id", sa.String(128), nullable=True),
        sa.Column("external_session_id", sa.String(128), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payments_order_id", "payments", ["order_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_external_id", "payments", ["external_id"])
    op.create_index(
        "ix_payments_external_session_id", "payments", ["external_session_id"], unique=True
    )
    op.create_index("ix_payments_created_at", "payments", ["created_at"])

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", _enum("loyalty_txn_type_enum"), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column(
            "order_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("orders.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("order_id", "type", name="uq_loyalty_txn_order_type"),
        sa.CheckConstraint(
            "(type = 'earn' AND points > 0) OR (type = 'spend' AND points < 0)",
            name="ck_loyalty_txn_sign_matches_type",
        ),
    )
    op.create_index(
        "ix_loyalty_transactions_account_id", "loyalty_transactions", ["account_id"]
    )
    op.create_index(
        "ix_loyalty_transactions_order_id", "loyalty_transactions", ["order_id"]
    )


def downgrade() -> None:
    op.drop_table("loyalty_transactions")
    op.drop_table("payments")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("magic_link_tokens")
    op.drop_table("checkout_sessions")
    op.drop_table("loyalty_accounts")
    op.drop_table("customers")
    op.drop_table("trip_departure_points")
    op.drop_table("trips")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
