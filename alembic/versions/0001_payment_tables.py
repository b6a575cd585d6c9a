"""orders, order items and payment attempts

Revision ID: 0001
Revises:
Create Date: 2026-10-19 12:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _enum(*values, name):
    return sa.Enum(*values, name=name, native_enum=False, length=32)


ORDER_STATUS = ("pending", "processing", "shipped", "delivered")
PAYMENT_METHOD = ("card", "mobile_money")
MOBILE_MONEY_STATUS = ("initiated", "pending", "paid", "failed")
ATTEMPT_STATUS = ("initiated", "pending", "paid", "failed", "superseded")


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("customer_name", sa.String(), nullable=False),
        sa.Column("customer_phone", sa.String(), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("delivery_address", sa.Text(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", _enum(*ORDER_STATUS, name="orderstatus"), nullable=False),
        sa.Column("payment_method", _enum(*PAYMENT_METHOD, name="paymentmethod"), nullable=True),
        sa.Column("payment_initiated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_failure_reason", sa.Text(), nullable=True),
        sa.Column("card_transaction_ref", sa.String(), nullable=True, unique=True),
        sa.Column("mpesa_merchant_request_id", sa.String(), nullable=True),
        sa.Column("mpesa_checkout_request_id", sa.String(), nullable=True),
        sa.Column("mpesa_receipt_number", sa.String(), nullable=True),
        sa.Column("mpesa_phone", sa.String(), nullable=True),
        sa.Column("mobile_money_status", _enum(*MOBILE_MONEY_STATUS, name="mobilemoneystatus"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_orders_id", "orders", ["id"])
    op.create_index("ix_orders_mpesa_checkout_request_id", "orders", ["mpesa_checkout_request_id"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("product_name", sa.String(), nullable=False),
        sa.Column("product_price", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("method", _enum(*PAYMENT_METHOD, name="paymentmethod"), nullable=False),
        sa.Column("status", _enum(*ATTEMPT_STATUS, name="attemptstatus"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("merchant_request_id", sa.String(), nullable=True),
        sa.Column("checkout_request_id", sa.String(), nullable=True, unique=True),
        sa.Column("card_intent_id", sa.String(), nullable=True, unique=True),
        sa.Column("result_code", sa.String(), nullable=True),
        sa.Column("result_desc", sa.Text(), nullable=True),
        sa.Column("receipt_number", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payment_attempts_order_id", "payment_attempts", ["order_id"])


def downgrade() -> None:
    op.drop_index("ix_payment_attempts_order_id", table_name="payment_attempts")
    op.drop_table("payment_attempts")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_mpesa_checkout_request_id", table_name="orders")
    op.drop_index("ix_orders_id", table_name="orders")
    op.drop_table("orders")
