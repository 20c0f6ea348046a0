"""Plain-dict views of persisted entities, used in action results and event payloads."""
from datetime import datetime
from typing import Any, Dict, Optional

from ..database.models import (
    GiftCard,
    GiftCardTransaction,
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
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def order_item_to_dict(item: OrderItem) -> Dict[str, Any]:
    return {
        "id": str(item.id),
        "variant_id": item.variant_id,
        "location_id": item.location_id,
        "product_id": item.product_id,
        "product_title": item.product_title,
        "variant_title": item.variant_title,
        "sku": item.sku,
        "quantity": item.quantity,
        "price": item.price,
        "subtotal": item.subtotal,
        "discount_amount": item.discount_amount,
        "tax_amount": item.tax_amount,
        "total": item.total,
        "fulfillment_status": item.fulfillment_status,
        "fulfillment_quantity": item.fulfillment_quantity,
    }


def order_to_dict(order: Order, include_items: bool = True) -> Dict[str, Any]:
    data = {
        "id": str(order.id),
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "email": order.email,
        "currency": order.currency,
        "subtotal_amount": order.subtotal_amount,
        "discount_amount": order.discount_amount,
        "tax_amount": order.tax_amount,
        "shipping_amount": order.shipping_amount,
        "total_amount": order.total_amount,
        "discount_codes": order.discount_codes or [],
        "shipping_method": order.shipping_method,
        "status": order.status,
        "payment_status": order.payment_status,
        "fulfillment_status": order.fulfillment_status,
        "financial_status": order.financial_status,
        "cancel_reason": order.cancel_reason,
        "cancelled_at": _iso(order.cancelled_at),
        "processed_at": _iso(order.processed_at),
        "created_at": _iso(order.created_at),
        "version": order.version,
    }
    if include_items:
        data["items"] = [order_item_to_dict(item) for item in order.items]
    return data


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": str(payment.id),
        "order_id": str(payment.order_id),
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "gateway": payment.gateway,
        "gateway_transaction_id": payment.gateway_transaction_id,
        "payment_method": payment.payment_method,
        "idempotency_key": payment.idempotency_key,
        "attempt_number": payment.attempt_number,
        "parent_payment_id": _str(payment.parent_payment_id),
        "failure_message": payment.failure_message,
        "authorized_at": _iso(payment.authorized_at),
        "captured_at": _iso(payment.captured_at),
        "failed_at": _iso(payment.failed_at),
        "cancelled_at": _iso(payment.cancelled_at),
        "created_at": _iso(payment.created_at),
    }


def refund_to_dict(refund: Refund) -> Dict[str, Any]:
    return {
        "id": str(refund.id),
        "order_id": str(refund.order_id),
        "payment_id": _str(refund.payment_id),
        "amount": refund.amount,
        "currency": refund.currency,
        "reason": refund.reason,
        "notes": refund.notes,
        "status": refund.status,
        "target": refund.target,
        "gateway_refund_id": refund.gateway_refund_id,
        "idempotency_key": refund.idempotency_key,
        "failure_message": refund.failure_message,
        "processed_at": _iso(refund.processed_at),
        "created_at": _iso(refund.created_at),
    }


def history_to_dict(row: OrderStatusHistory) -> Dict[str, Any]:
    return {
        "id": row.id,
        "order_id": str(row.order_id),
        "status_type": row.status_type,
        "from_status": row.from_status,
        "to_status": row.to_status,
        "notes": row.notes,
        "is_public": row.is_public,
        "changed_by": row.changed_by,
        "created_at": _iso(row.created_at),
    }


def stock_level_to_dict(stock: StockLevel) -> Dict[str, Any]:
    return {
        "variant_id": stock.variant_id,
        "location_id": stock.location_id,
        "quantity": stock.quantity,
        "reserved_quantity": stock.reserved_quantity,
        "available_quantity": stock.available_quantity,
        "incoming_quantity": stock.incoming_quantity,
        "reorder_point": stock.reorder_point,
        "reorder_quantity": stock.reorder_quantity,
        "last_restocked_at": _iso(stock.last_restocked_at),
        "last_sold_at": _iso(stock.last_sold_at),
    }


def adjustment_to_dict(adjustment: InventoryAdjustment) -> Dict[str, Any]:
    return {
        "id": adjustment.id,
        "variant_id": adjustment.variant_id,
        "location_id": adjustment.location_id,
        "type": adjustment.type,
        "quantity": adjustment.quantity,
        "reference_type": adjustment.reference_type,
        "reference_id": adjustment.reference_id,
        "reason": adjustment.reason,
        "notes": adjustment.notes,
        "created_by": adjustment.created_by,
        "created_at": _iso(adjustment.created_at),
    }


def webhook_to_dict(webhook: Webhook) -> Dict[str, Any]:
    return {
        "id": str(webhook.id),
        "name": webhook.name,
        "url": webhook.url,
        "events": list(webhook.events),
        "is_active": webhook.is_active,
        "max_retries": webhook.max_retries,
        "timeout_seconds": webhook.timeout_seconds,
        "total_deliveries": webhook.total_deliveries,
        "successful_deliveries": webhook.successful_deliveries,
        "failed_deliveries": webhook.failed_deliveries,
    }


def delivery_to_dict(delivery: WebhookDelivery) -> Dict[str, Any]:
    return {
        "id": str(delivery.id),
        "webhook_id": str(delivery.webhook_id),
        "event_type": delivery.event_type,
        "event_id": delivery.event_id,
        "url": delivery.url,
        "status": delivery.status,
        "status_code": delivery.status_code,
        "attempts": delivery.attempts,
        "max_retries": delivery.max_retries,
        "dead_lettered": delivery.is_dead_lettered,
        "error_message": delivery.error_message,
        "last_attempt_at": _iso(delivery.last_attempt_at),
        "next_retry_at": _iso(delivery.next_retry_at),
        "completed_at": _iso(delivery.completed_at),
        "created_at": _iso(delivery.created_at),
    }


def gift_card_to_dict(card: GiftCard) -> Dict[str, Any]:
    return {
        "id": str(card.id),
        "code": card.code,
        "initial_amount": card.initial_amount,
        "current_amount": card.current_amount,
        "currency": card.currency,
        "status": card.status,
        "expires_at": _iso(card.expires_at),
    }


def gift_card_transaction_to_dict(transaction: GiftCardTransaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "type": transaction.type,
        "amount": transaction.amount,
        "balance_after": transaction.balance_after,
        "order_id": _str(transaction.order_id),
        "refund_id": _str(transaction.refund_id),
        "notes": transaction.notes,
        "created_at": _iso(transaction.created_at),
    }


def store_credit_transaction_to_dict(transaction: StoreCreditTransaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "customer_id": transaction.customer_id,
        "sequence": transaction.sequence,
        "amount": transaction.amount,
        "balance_after": transaction.balance_after,
        "currency": transaction.currency,
        "order_id": _str(transaction.order_id),
        "refund_id": _str(transaction.refund_id),
        "notes": transaction.notes,
        "created_at": _iso(transaction.created_at),
    }
