"""
API routes for the commerce core.

Every action endpoint returns the ActionResult envelope. The HTTP status is
derived from the error category and code.
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..core.exceptions import ErrorCategory
from ..core.orders import OrderDraft
from ..core.pricing import OrderLineInput
from ..core.results import ActionResult
from ..core.service import CommerceService
from ..integrations.gateway_callbacks import SIGNATURE_HEADER
from ..monitoring.health import HealthCheck
from .dependencies import get_actor, get_commerce, get_health_check, get_idempotency_key
from .schemas import (
    ActionResponse,
    BulkStockAdjustmentRequest,
    CancelOrderRequest,
    CreateOrderRequest,
    CreatePaymentRequest,
    CreateStockLevelRequest,
    CreateWebhookRequest,
    FulfillOrderRequest,
    GiftCardPaymentRequest,
    HealthCheckResponse,
    IssueGiftCardRequest,
    RefundRequest,
    ReorderSettingsRequest,
    SetStockQuantityRequest,
    StockAdjustmentRequest,
    StockTransferRequest,
    StoreCreditPaymentRequest,
    StoreCreditRequest,
    UpdateOrderStatusRequest,
    UpdateWebhookRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
gateway_router = APIRouter(prefix="/gateway", tags=["gateway"])
balance_router = APIRouter(tags=["balances"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_STATUS_CODES = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "insufficient_stock": status.HTTP_409_CONFLICT,
    "illegal_transition": status.HTTP_409_CONFLICT,
    "retry_limit_exceeded": status.HTTP_409_CONFLICT,
    "refund_exceeds_balance": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "payment_declined": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_signature": status.HTTP_401_UNAUTHORIZED,
}
CATEGORY_STATUS_CODES = {
    ErrorCategory.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.INCONSISTENCY: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_code_for(result: ActionResult, created: bool = False) -> int:
    if result.success:
        return status.HTTP_201_CREATED if created and not result.replayed else status.HTTP_200_OK
    if result.error_code in ERROR_STATUS_CODES:
        return ERROR_STATUS_CODES[result.error_code]
    return CATEGORY_STATUS_CODES.get(result.error_category, status.HTTP_400_BAD_REQUEST)


def respond(result: ActionResult, created: bool = False) -> JSONResponse:
    code = status_code_for(result, created)
    if not result.success:
        logger.info(
            "api_action_failed",
            error_code=result.error_code,
            error_category=result.error_category.value if result.error_category else None,
            status_code=code,
        )
    headers = {"Retry-After": "1"} if result.is_retryable else None
    return JSONResponse(
        status_code=code, content=jsonable_encoder(result.to_dict()), headers=headers
    )


# Orders


@order_router.post(
    "",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Price the order, reserve its stock and persist it atomically",
)
async def create_order(
    request: CreateOrderRequest,
    commerce: CommerceService = Depends(get_commerce),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    """
    Place an order.

    Send an Idempotency-Key header to make retries safe; a repeat returns the
    same order with replayed=true.
    """
    draft = OrderDraft(
        email=request.email,
        items=[OrderLineInput(**item.model_dump()) for item in request.items],
        customer_id=request.customer_id,
        phone=request.phone,
        shipping_address=request.shipping_address,
        billing_address=request.billing_address,
        shipping_method=request.shipping_method,
        discount_codes=tuple(request.discount_codes),
        currency=request.currency,
        notes=request.notes,
    )
    logger.info("api_create_order_request", items=len(draft.items), email=draft.email)
    result = await commerce.create_order(draft, idempotency_key, actor or request.email)
    return respond(result, created=True)


@order_router.get("/by-number/{order_number}", response_model=ActionResponse)
async def get_order_by_number(
    order_number: str, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.get_order_by_number(order_number))


@order_router.get("/{order_id}", response_model=ActionResponse)
async def get_order(
    order_id: uuid.UUID, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.get_order(order_id))


@order_router.get("/{order_id}/history", response_model=ActionResponse)
async def get_order_history(
    order_id: uuid.UUID,
    public_only: bool = Query(default=False, description="Only customer-visible rows"),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(await commerce.order_history(order_id, public_only))


@order_router.post("/{order_id}/fulfill", response_model=ActionResponse)
async def fulfill_order(
    order_id: uuid.UUID,
    request: Optional[FulfillOrderRequest] = None,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    items = request.items if request is not None else None
    return respond(await commerce.mark_fulfilled(order_id, items, actor))


@order_router.post("/{order_id}/cancel", response_model=ActionResponse)
async def cancel_order(
    order_id: uuid.UUID,
    request: Optional[CancelOrderRequest] = None,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    """
    Cancel an unshipped order.

    Captured payments are only refunded when refund_captured is true;
    otherwise the result reports refund_required.
    """
    request = request or CancelOrderRequest()
    result = await commerce.cancel_order(order_id, request.reason, actor, request.refund_captured)
    return respond(result)


@order_router.post("/{order_id}/status", response_model=ActionResponse)
async def update_order_status(
    order_id: uuid.UUID,
    request: UpdateOrderStatusRequest,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    return respond(
        await commerce.update_order_status(order_id, request.status, actor, request.notes)
    )


@order_router.get("/{order_id}/payments", response_model=ActionResponse)
async def list_order_payments(
    order_id: uuid.UUID, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.list_payments(order_id))


@order_router.post(
    "/{order_id}/payments",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment",
)
async def create_payment(
    order_id: uuid.UUID,
    request: Optional[CreatePaymentRequest] = None,
    commerce: CommerceService = Depends(get_commerce),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
) -> JSONResponse:
    request = request or CreatePaymentRequest()
    result = await commerce.create_payment(
        order_id,
        amount=request.amount,
        payment_method=request.payment_method,
        gateway=request.gateway,
        idempotency_key=idempotency_key,
        instrument_reference=request.instrument_reference,
    )
    return respond(result, created=True)


@order_router.post(
    "/{order_id}/payments/gift-card",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def pay_with_gift_card(
    order_id: uuid.UUID,
    request: GiftCardPaymentRequest,
    commerce: CommerceService = Depends(get_commerce),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    result = await commerce.pay_with_gift_card(
        order_id, request.code, request.amount, idempotency_key, actor
    )
    return respond(result, created=True)


@order_router.post(
    "/{order_id}/payments/store-credit",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def pay_with_store_credit(
    order_id: uuid.UUID,
    request: Optional[StoreCreditPaymentRequest] = None,
    commerce: CommerceService = Depends(get_commerce),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    amount = request.amount if request is not None else None
    result = await commerce.pay_with_store_credit(order_id, amount, idempotency_key, actor)
    return respond(result, created=True)


@order_router.get("/{order_id}/refunds", response_model=ActionResponse)
async def list_order_refunds(
    order_id: uuid.UUID, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.list_refunds(order_id))


# Payments


@payment_router.get("/{payment_id}", response_model=ActionResponse)
async def get_payment(
    payment_id: uuid.UUID, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.get_payment(payment_id))


@payment_router.post("/{payment_id}/authorize", response_model=ActionResponse)
async def authorize_payment(
    payment_id: uuid.UUID,
    commerce: CommerceService = Depends(get_commerce),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    return respond(await commerce.authorize_payment(payment_id, idempotency_key, actor))


@payment_router.post(
    "/{payment_id}/capture",
    response_model=ActionResponse,
    summary="Capture a payment",
    description="Capture an authorized payment; a timeout is safe to retry with the same key",
)
async def capture_payment(
    payment_id: uuid.UUID,
    commerce: CommerceService = Depends(get_commerce),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    return respond(await commerce.capture_payment(payment_id, idempotency_key, actor))


@payment_router.post("/{payment_id}/void", response_model=ActionResponse)
async def void_payment(
    payment_id: uuid.UUID,
    commerce: CommerceService = Depends(get_commerce),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    return respond(await commerce.void_payment(payment_id, idempotency_key, actor))


@payment_router.post("/{payment_id}/retry", response_model=ActionResponse)
async def retry_payment(
    payment_id: uuid.UUID,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    return respond(await commerce.retry_failed_payment(payment_id, actor))


@payment_router.get("/{payment_id}/refundable", response_model=ActionResponse)
async def get_refundable_balance(
    payment_id: uuid.UUID, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.refundable_balance(payment_id))


@payment_router.post(
    "/{payment_id}/refunds",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund a payment",
    description="Create a full or partial refund for a captured payment",
)
async def refund_payment(
    payment_id: uuid.UUID,
    request: Optional[RefundRequest] = None,
    commerce: CommerceService = Depends(get_commerce),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    request = request or RefundRequest()
    logger.info(
        "api_refund_payment_request",
        payment_id=str(payment_id),
        amount=request.amount,
        reason=request.reason,
    )
    result = await commerce.process_refund(
        payment_id,
        amount=request.amount,
        reason=request.reason,
        notes=request.notes,
        actor=actor,
        idempotency_key=idempotency_key,
    )
    return respond(result, created=True)


@payment_router.get("/refunds/{refund_id}", response_model=ActionResponse)
async def get_refund(
    refund_id: uuid.UUID, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.get_refund(refund_id))


# Inventory


@inventory_router.post(
    "/stock-levels", response_model=ActionResponse, status_code=status.HTTP_201_CREATED
)
async def create_stock_level(
    request: CreateStockLevelRequest,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    result = await commerce.create_stock_level(
        request.variant_id,
        request.location_id,
        request.quantity,
        request.reorder_point,
        request.reorder_quantity,
        actor,
    )
    return respond(result, created=True)


@inventory_router.post(
    "/adjustments", response_model=ActionResponse, status_code=status.HTTP_201_CREATED
)
async def adjust_stock(
    request: StockAdjustmentRequest,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    result = await commerce.adjust_stock(
        request.variant_id,
        request.location_id,
        request.quantity,
        request.adjustment_type,
        reason=request.reason,
        reference_id=request.reference_id,
        notes=request.notes,
        actor=actor,
    )
    return respond(result, created=True)


@inventory_router.post(
    "/adjustments/bulk", response_model=ActionResponse, status_code=status.HTTP_201_CREATED
)
async def adjust_stock_bulk(
    request: BulkStockAdjustmentRequest,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    result = await commerce.adjust_stock_many(
        [entry.model_dump() for entry in request.adjustments],
        reason=request.reason,
        actor=actor,
    )
    return respond(result, created=True)


@inventory_router.put("/{variant_id}/{location_id}/quantity", response_model=ActionResponse)
async def set_stock_quantity(
    variant_id: str,
    location_id: str,
    request: SetStockQuantityRequest,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    result = await commerce.set_stock_quantity(
        variant_id, location_id, request.quantity, reason=request.reason, actor=actor
    )
    return respond(result)


@inventory_router.put(
    "/{variant_id}/{location_id}/reorder-settings", response_model=ActionResponse
)
async def update_reorder_settings(
    variant_id: str,
    location_id: str,
    request: ReorderSettingsRequest,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    result = await commerce.update_reorder_settings(
        variant_id,
        location_id,
        reorder_point=request.reorder_point,
        reorder_quantity=request.reorder_quantity,
        actor=actor,
    )
    return respond(result)


@inventory_router.post(
    "/transfers", response_model=ActionResponse, status_code=status.HTTP_201_CREATED
)
async def transfer_stock(
    request: StockTransferRequest,
    commerce: CommerceService = Depends(get_commerce),
    actor: Optional[str] = Depends(get_actor),
) -> JSONResponse:
    result = await commerce.transfer_stock(
        request.variant_id,
        request.from_location_id,
        request.to_location_id,
        request.quantity,
        request.reference_id,
        actor,
    )
    return respond(result, created=True)


@inventory_router.get("/{variant_id}/{location_id}", response_model=ActionResponse)
async def get_stock_level(
    variant_id: str, location_id: str, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.get_stock_level(variant_id, location_id))


@inventory_router.get("/{variant_id}/{location_id}/adjustments", response_model=ActionResponse)
async def list_stock_adjustments(
    variant_id: str, location_id: str, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.stock_adjustments(variant_id, location_id))


@inventory_router.get("/{variant_id}/{location_id}/reconcile", response_model=ActionResponse)
async def reconcile_stock_level(
    variant_id: str,
    location_id: str,
    seed: int = Query(default=0, description="Quantity on hand before the ledger began"),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(await commerce.reconcile_stock(variant_id, location_id, seed))


# Webhooks


@webhook_router.post("", response_model=ActionResponse, status_code=status.HTTP_201_CREATED)
async def register_webhook(
    request: CreateWebhookRequest, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    result = await commerce.register_webhook(
        request.url,
        request.name,
        request.events,
        secret=request.secret,
        description=request.description,
        headers=request.headers,
        max_retries=request.max_retries,
        timeout_seconds=request.timeout_seconds,
    )
    return respond(result, created=True)


@webhook_router.get("/deliveries", response_model=ActionResponse)
async def list_deliveries(
    delivery_status: Optional[str] = Query(default=None, alias="status"),
    event_type: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(
        await commerce.list_deliveries(None, delivery_status, event_type, limit, offset)
    )


@webhook_router.get("/deliveries/dead-letters", response_model=ActionResponse)
async def list_dead_letters(
    limit: int = Query(default=100, ge=1, le=500),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(await commerce.list_dead_letters(limit))


@webhook_router.post("/deliveries/{delivery_id}/cancel", response_model=ActionResponse)
async def cancel_delivery(
    delivery_id: uuid.UUID, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.cancel_delivery(delivery_id))


@webhook_router.post("/deliveries/{delivery_id}/requeue", response_model=ActionResponse)
async def requeue_delivery(
    delivery_id: uuid.UUID, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.requeue_delivery(delivery_id))


@webhook_router.get("/{webhook_id}/deliveries", response_model=ActionResponse)
async def list_webhook_deliveries(
    webhook_id: uuid.UUID,
    delivery_status: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(
        await commerce.list_deliveries(webhook_id, delivery_status, None, limit, offset)
    )


@webhook_router.patch("/{webhook_id}", response_model=ActionResponse)
async def update_webhook(
    webhook_id: uuid.UUID,
    request: UpdateWebhookRequest,
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(await commerce.set_webhook_active(webhook_id, request.is_active))


# Gateway notifications


@gateway_router.post(
    "/callbacks",
    response_model=ActionResponse,
    summary="Gateway notification endpoint",
    description="Signed payment and refund notifications from the gateway",
)
async def gateway_callback(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    """
    Handle a gateway notification.

    Verifies the signature over the raw body and applies each event id once.
    """
    body = await request.body()
    return respond(await commerce.handle_gateway_callback(body, signature))


# Gift cards and store credit


@balance_router.post(
    "/gift-cards", response_model=ActionResponse, status_code=status.HTTP_201_CREATED
)
async def issue_gift_card(
    request: IssueGiftCardRequest, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    result = await commerce.issue_gift_card(
        request.code, request.amount, request.currency, request.expires_at
    )
    return respond(result, created=True)


@balance_router.get("/gift-cards/{code}", response_model=ActionResponse)
async def get_gift_card(
    code: str, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.get_gift_card(code))


@balance_router.post(
    "/customers/{customer_id}/store-credit",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def credit_store_credit(
    customer_id: str,
    request: StoreCreditRequest,
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    result = await commerce.credit_store_credit(
        customer_id, request.amount, request.currency, request.notes
    )
    return respond(result, created=True)


@balance_router.get("/customers/{customer_id}/store-credit", response_model=ActionResponse)
async def get_store_credit(
    customer_id: str, commerce: CommerceService = Depends(get_commerce)
) -> JSONResponse:
    return respond(await commerce.store_credit(customer_id))


# Admin


@admin_router.post(
    "/reconcile",
    response_model=ActionResponse,
    summary="Run reconciliation",
    description="Resolve pending gateway outcomes and check ledgers and order totals",
)
async def run_reconciliation(
    pending_limit: int = Query(default=100, ge=1, le=1000),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(await commerce.reconcile(pending_limit))


@admin_router.post("/payments/retry-failed", response_model=ActionResponse)
async def retry_failed_payments(
    limit: int = Query(default=50, ge=1, le=500),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(await commerce.retry_failed_payments(limit=limit))


@admin_router.post("/webhooks/sweep", response_model=ActionResponse)
async def sweep_webhooks(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    commerce: CommerceService = Depends(get_commerce),
) -> JSONResponse:
    return respond(await commerce.sweep_webhooks(limit))


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
