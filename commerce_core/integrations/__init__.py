"""Payment gateway port, adapters and inbound notifications."""
from .gateway import (
    GatewayClient,
    GatewayError,
    GatewayErrorType,
    GatewayOutcome,
    GatewayResult,
    PaymentGateway,
    load_gateway,
)

__all__ = [
    "GatewayClient",
    "GatewayError",
    "GatewayErrorType",
    "GatewayOutcome",
    "GatewayResult",
    "PaymentGateway",
    "load_gateway",
]
