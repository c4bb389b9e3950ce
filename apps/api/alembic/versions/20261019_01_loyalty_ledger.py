"""Create tenant, customer, order, bill and points ledger tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


customer_status = sa.Enum("ACTIVE", "INACTIVE", "BLOCKED", name="customer_status")
customer_tier = sa.Enum("BRONZE", "SILVER", "GOLD", "PLATINUM", name="customer_tier")
points_transaction_type = sa.Enum("EARN", "REDEEM", "BONUS", "EXPIRE", "ADJUST", name="points_transaction_type")
points_bonus_type = sa.Enum("BIRTHDAY", "MILESTONE", "MANUAL", "WELCOME", name="points_bonus_type")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("timezone", sa.String(), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("status", customer_status, nullable=False, server_default="ACTIVE"),
        sa.Column("tier", customer_tier, nullable=False, server_default="BRONZE"),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_earned_lifetime", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_redeemed_lifetime", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_expired_lifetime", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_adjusted_net", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_visits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_order_value", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index("ix_customers_tenant_status", "customers", ["tenant_id", "status"])

    op.create_table(
        "orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_orders_customer_placed_at", "orders", ["customer_id", "placed_at"])

    op.create_table(
        "bills",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("points_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_discount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "points_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", points_transaction_type, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("bill_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bills.id", ondelete="SET NULL"), nullable=True),
        sa.Column("order_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("multiplier", sa.Numeric(6, 3), nullable=True),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("bonus_type", points_bonus_type, nullable=True),
        sa.Column("milestone_visit_number", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("adjusted_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_points_transactions_customer_created",
        "points_transactions",
        ["customer_id", "created_at"],
    )
    op.create_index(
        "ix_points_transactions_tenant_type_expires",
        "points_transactions",
        ["tenant_id", "type", "expires_at"],
    )
    op.create_index(
        "ix_points_transactions_customer_bonus",
        "points_transactions",
        ["customer_id", "bonus_type"],
    )


def downgrade() -> None:
    op.drop_index("ix_points_transactions_customer_bonus", table_name="points_transactions")
    op.drop_index("ix_points_transactions_tenant_type_expires", table_name="points_transactions")
    op.drop_index("ix_points_transactions_customer_created", table_name="points_transactions")
    op.drop_table("points_transactions")
    op.drop_table("bills")
    op.drop_index("ix_orders_customer_placed_at", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_customers_tenant_status", table_name="customers")
    op.drop_table("customers")
    op.drop_table("tenants")

    bind = op.get_bind()
    for enum_type in (points_bonus_type, points_transaction_type, customer_tier, customer_status):
        enum_type.drop(bind, checkfirst=True)
