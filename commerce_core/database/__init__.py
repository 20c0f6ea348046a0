"""Database package for the commerce core."""
from .connection import Database, DatabaseUnavailable
from .models import (
    Base,
    GiftCard,
    GiftCardTransaction,
    IdempotencyKey,
    InventoryAdjustment,
    Order,
    OrderItem,
    OrderStatusHistory,
    Payment,
    Refund,
    StockLevel,
    StoreCreditTransaction,
    Webhook,
    WebhookDelivery,
    utc_now,
)

__all__ = [
    "Base",
    "Database",
    "DatabaseUnavailable",
    "GiftCard",
    "GiftCardTransaction",
    "IdempotencyKey",
    "InventoryAdjustment",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "Payment",
    "Refund",
    "StockLevel",
    "StoreCreditTransaction",
    "Webhook",
    "WebhookDelivery",
    "utc_now",
]
