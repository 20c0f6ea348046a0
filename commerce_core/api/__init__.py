"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    ActionResponse,
    CreateOrderRequest,
    CreatePaymentRequest,
    RefundRequest,
)

__all__ = [
    "create_app",
    "ActionResponse",
    "CreateOrderRequest",
    "CreatePaymentRequest",
    "RefundRequest",
]
