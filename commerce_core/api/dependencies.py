"""FastAPI dependencies resolving the objects built at startup."""
from typing import Optional

from fastapi import Header, Request

from ..core.service import CommerceService
from ..monitoring.health import HealthCheck


def get_commerce(request: Request) -> CommerceService:
    return request.app.state.commerce


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def get_actor(x_actor: Optional[str] = Header(default=None, alias="X-Actor")) -> Optional[str]:
    """Who is acting; recorded in status history and ledgers."""
    return x_actor


def get_idempotency_key(
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Optional[str]:
    if idempotency_key is not None:
        idempotency_key = idempotency_key.strip() or None
    return idempotency_key
