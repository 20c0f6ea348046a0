"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
LedgerId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _in(column: str, *values: str) -> str:
    return f"{column} IN ({', '.join(repr(value) for value in values)})"


def _timestamps(updated: bool = True) -> list:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade() -> None:
    """Upgrade database schema."""
    # Create orders table
    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_number", sa.String(length=32), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("subtotal_amount", sa.BigInteger(), nullable=False),
        sa.Column("discount_amount", sa.BigInteger(), nullable=False),
        sa.Column("tax_amount", sa.BigInteger(), nullable=False),
        sa.Column("shipping_amount", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("discount_codes", JSONType, nullable=True),
        sa.Column("shipping_address", JSONType, nullable=True),
        sa.Column("billing_address", JSONType, nullable=True),
        sa.Column("shipping_method", sa.String(length=50), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("payment_status", sa.String(length=50), nullable=False),
        sa.Column("fulfillment_status", sa.String(length=50), nullable=False),
        sa.Column("financial_status", sa.String(length=50), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "total_amount = subtotal_amount - discount_amount + tax_amount + shipping_amount",
            name="order_totals_balance",
        ),
        sa.CheckConstraint(
            "subtotal_amount >= 0 AND discount_amount >= 0 AND tax_amount >= 0 "
            "AND shipping_amount >= 0",
            name="order_amounts_non_negative",
        ),
        sa.CheckConstraint(
            _in("status", "pending", "processing", "shipped", "delivered", "cancelled", "refunded"),
            name="valid_order_status",
        ),
        sa.CheckConstraint(
            _in(
                "payment_status",
                "pending",
                "authorized",
                "paid",
                "partially_refunded",
                "refunded",
                "failed",
                "cancelled",
            ),
            name="valid_order_payment_status",
        ),
        sa.CheckConstraint(
            _in("fulfillment_status", "unfulfilled", "partial", "fulfilled", "cancelled"),
            name="valid_fulfillment_status",
        ),
        sa.CheckConstraint(
            _in(
                "financial_status",
                "pending",
                "authorized",
                "paid",
                "partially_paid",
                "refunded",
                "partially_refunded",
                "voided",
            ),
            name="valid_financial_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number"),
    )
    op.create_index("idx_orders_status_payment", "orders", ["status", "payment_status"])
    op.create_index(op.f("ix_orders_customer_id"), "orders", ["customer_id"])
    op.create_index(op.f("ix_orders_status"), "orders", ["status"])
    op.create_index(op.f("ix_orders_created_at"), "orders", ["created_at"])

    # Create order_items table
    op.create_table(
        "order_items",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("variant_id", sa.String(length=255), nullable=False),
        sa.Column("location_id", sa.String(length=255), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=True),
        sa.Column("product_title", sa.String(length=500), nullable=False),
        sa.Column("product_handle", sa.String(length=255), nullable=True),
        sa.Column("variant_title", sa.String(length=255), nullable=True),
        sa.Column("sku", sa.String(length=255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("discount_amount", sa.BigInteger(), nullable=False),
        sa.Column("tax_amount", sa.BigInteger(), nullable=False),
        sa.Column("subtotal", sa.BigInteger(), nullable=False),
        sa.Column("total", sa.BigInteger(), nullable=False),
        sa.Column("fulfillment_status", sa.String(length=50), nullable=False),
        sa.Column("fulfillment_quantity", sa.Integer(), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint("quantity > 0", name="positive_item_quantity"),
        sa.CheckConstraint("price >= 0", name="non_negative_item_price"),
        sa.CheckConstraint(
            "fulfillment_quantity >= 0 AND fulfillment_quantity <= quantity",
            name="fulfillment_within_quantity",
        ),
        sa.CheckConstraint(
            "total = subtotal - discount_amount + tax_amount", name="item_totals_balance"
        ),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_order_items_order_id"), "order_items", ["order_id"])

    # Create payments table
    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("gateway", sa.String(length=50), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("gateway_response", JSONType, nullable=True),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("instrument_reference", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("parent_payment_id", sa.Uuid(), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="positive_payment_amount"),
        sa.CheckConstraint("attempt_number >= 1", name="positive_attempt_number"),
        sa.CheckConstraint(
            _in(
                "status",
                "pending",
                "authorized",
                "captured",
                "failed",
                "cancelled",
                "refunded",
                "partially_refunded",
            ),
            name="valid_payment_status",
        ),
        sa.CheckConstraint("length(currency) = 3", name="valid_payment_currency"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["parent_payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_payments_order_status", "payments", ["order_id", "status"])
    op.create_index(op.f("ix_payments_order_id"), "payments", ["order_id"])
    op.create_index(op.f("ix_payments_status"), "payments", ["status"])
    op.create_index(
        op.f("ix_payments_gateway_transaction_id"), "payments", ["gateway_transaction_id"]
    )
    op.create_index(
        op.f("ix_payments_idempotency_key"), "payments", ["idempotency_key"], unique=True
    )
    op.create_index(op.f("ix_payments_created_at"), "payments", ["created_at"])

    # Create refunds table
    op.create_table(
        "refunds",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("payment_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("reason", sa.String(length=50), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("target", sa.String(length=50), nullable=False),
        sa.Column("gateway_refund_id", sa.String(length=255), nullable=True),
        sa.Column("gateway_response", JSONType, nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="positive_refund_amount"),
        sa.CheckConstraint(
            _in("status", "pending", "success", "failure", "cancelled"),
            name="valid_refund_status",
        ),
        sa.CheckConstraint(
            _in("reason", "duplicate", "fraudulent", "requested_by_customer", "other"),
            name="valid_refund_reason",
        ),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(op.f("ix_refunds_order_id"), "refunds", ["order_id"])
    op.create_index(op.f("ix_refunds_payment_id"), "refunds", ["payment_id"])
    op.create_index(op.f("ix_refunds_status"), "refunds", ["status"])

    # Create order_status_history table
    op.create_table(
        "order_status_history",
        sa.Column("id", LedgerId, autoincrement=True, nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("from_status", sa.String(length=50), nullable=True),
        sa.Column("to_status", sa.String(length=50), nullable=False),
        sa.Column("status_type", sa.String(length=50), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("changed_by", sa.String(length=255), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            _in("status_type", "order", "payment", "fulfillment"), name="valid_status_type"
        ),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_order_status_history_order_id"), "order_status_history", ["order_id"]
    )

    # Create stock_levels table
    op.create_table(
        "stock_levels",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("variant_id", sa.String(length=255), nullable=False),
        sa.Column("location_id", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reserved_quantity", sa.Integer(), nullable=False),
        sa.Column("incoming_quantity", sa.Integer(), nullable=False),
        sa.Column("reorder_point", sa.Integer(), nullable=True),
        sa.Column("reorder_quantity", sa.Integer(), nullable=True),
        sa.Column("last_restocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sold_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "reserved_quantity >= 0 AND reserved_quantity <= quantity",
            name="reserved_within_on_hand",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("variant_id", "location_id", name="uq_stock_variant_location"),
    )

    # Create inventory_adjustments table (append-only ledger)
    op.create_table(
        "inventory_adjustments",
        sa.Column("id", LedgerId, autoincrement=True, nullable=False),
        sa.Column("variant_id", sa.String(length=255), nullable=False),
        sa.Column("location_id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reference_type", sa.String(length=50), nullable=True),
        sa.Column("reference_id", sa.String(length=255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            _in(
                "type", "received", "sold", "returned", "damaged", "lost", "correction", "transfer"
            ),
            name="valid_adjustment_type",
        ),
        sa.CheckConstraint(
            "reference_type IS NULL OR "
            + _in("reference_type", "order", "return", "transfer", "adjustment"),
            name="valid_adjustment_reference_type",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_adjustments_variant_location",
        "inventory_adjustments",
        ["variant_id", "location_id"],
    )
    op.create_index(
        "idx_adjustments_reference",
        "inventory_adjustments",
        ["reference_type", "reference_id"],
    )

    # Create webhooks table
    op.create_table(
        "webhooks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("events", JSONType, nullable=False),
        sa.Column("secret", sa.String(length=255), nullable=False),
        sa.Column("headers", JSONType, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("total_deliveries", sa.Integer(), nullable=False),
        sa.Column("successful_deliveries", sa.Integer(), nullable=False),
        sa.Column("failed_deliveries", sa.Integer(), nullable=False),
        sa.Column("last_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("max_retries >= 1", name="positive_max_retries"),
        sa.CheckConstraint("timeout_seconds > 0", name="positive_timeout"),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create webhook_deliveries table
    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("webhook_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("http_method", sa.String(length=10), nullable=False),
        sa.Column("headers", JSONType, nullable=True),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_headers", JSONType, nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=255), nullable=True),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            _in("status", "pending", "success", "failed", "cancelled"),
            name="valid_delivery_status",
        ),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_retries", name="attempts_within_budget"
        ),
        sa.ForeignKeyConstraint(["webhook_id"], ["webhooks.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("webhook_id", "event_id", name="uq_delivery_webhook_event"),
    )
    op.create_index(
        "webhook_deliveries_next_retry_idx", "webhook_deliveries", ["status", "next_retry_at"]
    )
    op.create_index(
        op.f("ix_webhook_deliveries_webhook_id"), "webhook_deliveries", ["webhook_id"]
    )

    # Create idempotency_keys table
    op.create_table(
        "idempotency_keys",
        sa.Column("id", LedgerId, autoincrement=True, nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("operation", sa.String(length=100), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("result", JSONType, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            _in("status", "pending", "success", "error"), name="valid_idempotency_status"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key"),
    )
    op.create_index(
        "idx_idempotency_status_locked", "idempotency_keys", ["status", "locked_until"]
    )
    op.create_index(op.f("ix_idempotency_keys_resource_id"), "idempotency_keys", ["resource_id"])

    # Create gift_cards table
    op.create_table(
        "gift_cards",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("initial_amount", sa.BigInteger(), nullable=False),
        sa.Column("current_amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("current_amount >= 0", name="non_negative_gift_card_balance"),
        sa.CheckConstraint(
            _in("status", "active", "used", "expired", "disabled"),
            name="valid_gift_card_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )

    # Create gift_card_transactions table
    op.create_table(
        "gift_card_transactions",
        sa.Column("id", LedgerId, autoincrement=True, nullable=False),
        sa.Column("gift_card_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=True),
        sa.Column("refund_id", sa.Uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            _in("type", "issued", "used", "refunded", "expired"),
            name="valid_gift_card_transaction_type",
        ),
        sa.CheckConstraint("balance_after >= 0", name="non_negative_balance_after"),
        sa.ForeignKeyConstraint(["gift_card_id"], ["gift_cards.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("refund_id"),
    )
    op.create_index(
        op.f("ix_gift_card_transactions_gift_card_id"), "gift_card_transactions", ["gift_card_id"]
    )

    # Create store_credit_transactions table
    op.create_table(
        "store_credit_transactions",
        sa.Column("id", LedgerId, autoincrement=True, nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=True),
        sa.Column("refund_id", sa.Uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("balance_after >= 0", name="non_negative_store_credit"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("customer_id", "sequence", name="uq_store_credit_sequence"),
        sa.UniqueConstraint("refund_id"),
    )
    op.create_index(
        op.f("ix_store_credit_transactions_customer_id"),
        "store_credit_transactions",
        ["customer_id"],
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(
        op.f("ix_store_credit_transactions_customer_id"), table_name="store_credit_transactions"
    )
    op.drop_table("store_credit_transactions")
    op.drop_index(
        op.f("ix_gift_card_transactions_gift_card_id"), table_name="gift_card_transactions"
    )
    op.drop_table("gift_card_transactions")
    op.drop_table("gift_cards")
    op.drop_index(op.f("ix_idempotency_keys_resource_id"), table_name="idempotency_keys")
    op.drop_index("idx_idempotency_status_locked", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index(op.f("ix_webhook_deliveries_webhook_id"), table_name="webhook_deliveries")
    op.drop_index("webhook_deliveries_next_retry_idx", table_name="webhook_deliveries")
    op.drop_table("webhook_deliveries")
    op.drop_table("webhooks")
    op.drop_index("idx_adjustments_reference", table_name="inventory_adjustments")
    op.drop_index("idx_adjustments_variant_location", table_name="inventory_adjustments")
    op.drop_table("inventory_adjustments")
    op.drop_table("stock_levels")
    op.drop_index(op.f("ix_order_status_history_order_id"), table_name="order_status_history")
    op.drop_table("order_status_history")
    op.drop_index(op.f("ix_refunds_status"), table_name="refunds")
    op.drop_index(op.f("ix_refunds_payment_id"), table_name="refunds")
    op.drop_index(op.f("ix_refunds_order_id"), table_name="refunds")
    op.drop_table("refunds")
    op.drop_index(op.f("ix_payments_created_at"), table_name="payments")
    op.drop_index(op.f("ix_payments_idempotency_key"), table_name="payments")
    op.drop_index(op.f("ix_payments_gateway_transaction_id"), table_name="payments")
    op.drop_index(op.f("ix_payments_status"), table_name="payments")
    op.drop_index(op.f("ix_payments_order_id"), table_name="payments")
    op.drop_index("idx_payments_order_status", table_name="payments")
    op.drop_table("payments")
    op.drop_index(op.f("ix_order_items_order_id"), table_name="order_items")
    op.drop_table("order_items")
    op.drop_index(op.f("ix_orders_created_at"), table_name="orders")
    op.drop_index(op.f("ix_orders_status"), table_name="orders")
    op.drop_index(op.f("ix_orders_customer_id"), table_name="orders")
    op.drop_index("idx_orders_status_payment", table_name="orders")
    op.drop_table("orders")
