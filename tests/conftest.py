"""
Pytest configuration and fixtures for commerce core tests.

Every test gets its own SQLite file, an in-memory gateway and a mock HTTP
transport for webhook deliveries.
"""
import uuid
from typing import Any, AsyncGenerator, Dict, Tuple

import httpx
import pytest
import pytest_asyncio

from commerce_core.config import Settings
from commerce_core.core.service import CommerceService
from commerce_core.database import Database
from commerce_core.integrations.fake_gateway import FakeGateway
from tests.factories import LOCATION, VARIANT, RecordingReceiver, draft, ok

CALLBACK_SECRET = "callback-secret"


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'commerce.db'}",
        redis_url=None,
        app_env="test",
        log_level="WARNING",
        tax_rate_bps=1800,
        shipping_rates={"standard": 0, "express": 15000},
        discount_rules={
            "WELCOME10": {"kind": "percentage", "value": 1000},
            "FLAT500": {"kind": "fixed", "value": 50000, "minimum_subtotal": 100000},
        },
        gateway_timeout_seconds=0.2,
        gateway_lookup_attempts=1,
        gateway_callback_secret=CALLBACK_SECRET,
        payment_retry_max_attempts=3,
        payment_retry_delay_minutes=0,
        webhook_backoff_base_seconds=0.01,
        webhook_backoff_cap_seconds=0.05,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def receiver() -> RecordingReceiver:
    return RecordingReceiver()


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncGenerator[Database, None]:
    database = Database.from_settings(settings)
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def commerce(
    db: Database, settings: Settings, gateway: FakeGateway, receiver: RecordingReceiver
) -> AsyncGenerator[CommerceService, None]:
    """Service wired to the fake gateway and the recording webhook receiver."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    service = CommerceService(
        db, settings, gateway_adapter=gateway, http_client=http_client, worker_id="test-worker"
    )
    yield service
    await http_client.aclose()


@pytest_asyncio.fixture
async def stocked(commerce: CommerceService) -> Dict[str, Any]:
    """Ten units of the default variant at the default location."""
    return ok(await commerce.create_stock_level(VARIANT, LOCATION, 10))


@pytest_asyncio.fixture
async def placed_order(commerce: CommerceService, stocked: Dict[str, Any]) -> Dict[str, Any]:
    """A pending order for 2 units, total 118000."""
    return ok(await commerce.create_order(draft()))


@pytest_asyncio.fixture
async def paid_order(
    commerce: CommerceService, placed_order: Dict[str, Any]
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """The placed order, fully paid by one captured gateway payment."""
    order_id = uuid.UUID(placed_order["id"])
    payment = ok(await commerce.create_payment(order_id, payment_method="card"))
    payment_id = uuid.UUID(payment["id"])
    ok(await commerce.authorize_payment(payment_id))
    payment = ok(await commerce.capture_payment(payment_id))
    order = ok(await commerce.get_order(order_id))
    return order, payment
