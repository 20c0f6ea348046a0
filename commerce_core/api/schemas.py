"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class OrderItemRequest(BaseModel):
    """A line of a new order, with the product snapshot taken at checkout."""

    variant_id: str = Field(..., min_length=1, description="Product variant identifier")
    location_id: str = Field(..., min_length=1, description="Stock location to reserve from")
    quantity: int = Field(..., gt=0, description="Units ordered")
    price: int = Field(..., ge=0, description="Unit price in minor units (paise)")
    product_title: str = Field(..., min_length=1, description="Product title at checkout")
    product_id: Optional[str] = Field(default=None, description="Product identifier")
    product_handle: Optional[str] = Field(default=None, description="Product URL handle")
    variant_title: Optional[str] = Field(default=None, description="Variant title")
    sku: Optional[str] = Field(default=None, description="Stock keeping unit")


class CreateOrderRequest(BaseModel):
    """Request schema for placing an order."""

    email: str = Field(..., description="Customer email")
    items: List[OrderItemRequest] = Field(..., min_length=1, description="Order lines")
    customer_id: Optional[str] = Field(default=None, description="Customer identifier")
    phone: Optional[str] = Field(default=None, description="Contact phone")
    shipping_address: Optional[Dict[str, Any]] = Field(default=None, description="Shipping address")
    billing_address: Optional[Dict[str, Any]] = Field(default=None, description="Billing address")
    shipping_method: Optional[str] = Field(default=None, description="Shipping method name")
    discount_codes: List[str] = Field(default_factory=list, description="Discount codes to apply")
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="Currency code (e.g., INR)"
    )
    notes: Optional[str] = Field(default=None, description="Customer notes")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "email": "asha@example.com",
                    "customer_id": "cust_123",
                    "shipping_method": "standard",
                    "items": [
                        {
                            "variant_id": "var_tshirt_m",
                            "location_id": "wh_blr",
                            "quantity": 2,
                            "price": 49900,
                            "product_title": "Logo T-Shirt",
                            "sku": "TS-LOGO-M",
                        }
                    ],
                }
            ]
        }
    }


class FulfillOrderRequest(BaseModel):
    """Item id -> units to fulfil; omitted fulfils everything outstanding."""

    items: Optional[Dict[str, int]] = Field(default=None, description="Item quantities to fulfil")


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Why the order is cancelled")
    refund_captured: bool = Field(
        default=False, description="Also refund payments that were already captured"
    )


class UpdateOrderStatusRequest(BaseModel):
    status: str = Field(..., description="processing, shipped or delivered")
    notes: Optional[str] = Field(default=None, description="Note recorded in the history")


class CreatePaymentRequest(BaseModel):
    """Request schema for creating a gateway payment."""

    amount: Optional[int] = Field(
        default=None, gt=0, description="Amount in minor units; defaults to the outstanding balance"
    )
    payment_method: Optional[str] = Field(default=None, description="Method label (card, upi, ...)")
    gateway: Optional[str] = Field(default=None, description="Gateway name")
    instrument_reference: Optional[str] = Field(
        default=None, description="Opaque reference to the payment instrument"
    )


class GiftCardPaymentRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Gift card code")
    amount: Optional[int] = Field(default=None, gt=0, description="Amount in minor units")


class StoreCreditPaymentRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0, description="Amount in minor units")


class RefundRequest(BaseModel):
    """Request schema for refunds."""

    amount: Optional[int] = Field(
        default=None, gt=0, description="Refund amount in minor units (None = remaining balance)"
    )
    reason: str = Field(default="requested_by_customer", description="Refund reason")
    notes: Optional[str] = Field(default=None, description="Free-form note")


class CreateStockLevelRequest(BaseModel):
    variant_id: str = Field(..., min_length=1)
    location_id: str = Field(..., min_length=1)
    quantity: int = Field(default=0, ge=0, description="Opening on-hand quantity")
    reorder_point: Optional[int] = Field(default=None, ge=0)
    reorder_quantity: Optional[int] = Field(default=None, ge=0)


class StockAdjustmentRequest(BaseModel):
    variant_id: str = Field(..., min_length=1)
    location_id: str = Field(..., min_length=1)
    quantity: int = Field(..., description="Signed change to on-hand quantity")
    adjustment_type: str = Field(
        ..., description="received, sold, returned, damaged, lost or correction"
    )
    reason: Optional[str] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None


class BulkStockAdjustmentEntry(BaseModel):
    variant_id: str = Field(..., min_length=1)
    location_id: str = Field(..., min_length=1)
    quantity: int = Field(..., description="Signed change to on-hand quantity")
    adjustment_type: str
    reason: Optional[str] = None


class BulkStockAdjustmentRequest(BaseModel):
    """Request schema for a batch of adjustments applied all or nothing."""

    adjustments: List[BulkStockAdjustmentEntry] = Field(..., min_length=1)
    reason: Optional[str] = Field(default=None, description="Default reason for every entry")


class SetStockQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=0, description="Counted on-hand quantity")
    reason: Optional[str] = None


class ReorderSettingsRequest(BaseModel):
    reorder_point: Optional[int] = Field(default=None, ge=0)
    reorder_quantity: Optional[int] = Field(default=None, ge=1)


class StockTransferRequest(BaseModel):
    variant_id: str = Field(..., min_length=1)
    from_location_id: str = Field(..., min_length=1)
    to_location_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    reference_id: Optional[str] = None


class CreateWebhookRequest(BaseModel):
    """Request schema for a webhook subscription."""

    url: str = Field(..., description="Endpoint receiving POSTed events")
    name: str = Field(..., min_length=1, description="Subscription name")
    events: List[str] = Field(..., min_length=1, description="Event types, or '*' for all")
    secret: Optional[str] = Field(
        default=None, description="Signing secret; generated when omitted"
    )
    description: Optional[str] = None
    headers: Optional[Dict[str, str]] = Field(default=None, description="Extra request headers")
    max_retries: int = Field(default=3, ge=1, le=20, description="Attempts before dead-lettering")
    timeout_seconds: int = Field(default=30, ge=1, le=120, description="Per-attempt timeout")


class UpdateWebhookRequest(BaseModel):
    is_active: bool


class IssueGiftCardRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=64)
    amount: int = Field(..., gt=0, description="Initial balance in minor units")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    expires_at: Optional[datetime] = None


class StoreCreditRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Credit in minor units")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    notes: Optional[str] = None


class ActionErrorResponse(BaseModel):
    message: str
    category: Optional[str] = None
    code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ActionResponse(BaseModel):
    """Envelope returned by every action endpoint."""

    success: bool
    data: Optional[Any] = None
    replayed: bool = False
    error: Optional[ActionErrorResponse] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
