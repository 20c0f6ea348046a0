"""
Tests for structured logging setup and its processors.
"""
import logging
from typing import Any, Dict, Iterator

import pytest
import structlog

from commerce_core.config import Settings
from commerce_core.core.service import CommerceService
from commerce_core.monitoring.logging import (
    action_context,
    mask,
    redact_sensitive,
    setup_logging,
)


@pytest.fixture
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestRedaction:
    """Test suite for masking sensitive fields."""

    @pytest.mark.unit
    def test_mask_keeps_last_four_characters(self) -> None:
        assert mask("GIFT-2024-ABCD") == "**********ABCD"
        assert mask("abc") == "***"

    @pytest.mark.unit
    def test_sensitive_fields_are_masked(self) -> None:
        event = redact_sensitive(
            None,
            "info",
            {
                "event": "gift_card_redeemed",
                "gift_card_code": "GIFT-SPLIT",
                "amount": 20000,
                "details": {"secret": "whsec_test", "order_id": "o-1"},
                "headers": {"Authorization": "Bearer token-1234"},
            },
        )

        assert event["gift_card_code"] == "******PLIT"
        assert event["amount"] == 20000
        assert event["details"] == {"secret": "******test", "order_id": "o-1"}
        assert event["headers"]["Authorization"].endswith("1234")
        assert "Bearer" not in event["headers"]["Authorization"]

    @pytest.mark.unit
    def test_missing_values_are_left_alone(self) -> None:
        event = redact_sensitive(None, "info", {"event": "x", "instrument_reference": None})
        assert event["instrument_reference"] is None


class TestActionContext:
    """Test suite for contextvar binding around service actions."""

    @pytest.mark.unit
    def test_binding_is_restored_after_nested_actions(self) -> None:
        with action_context("cancel_order", actor="ops@example.com"):
            with action_context("refund_payment", idempotency_key=None):
                inner = structlog.contextvars.get_contextvars()
            outer = structlog.contextvars.get_contextvars()
        after = structlog.contextvars.get_contextvars()

        assert inner == {"action": "refund_payment", "actor": "ops@example.com"}
        assert outer == {"action": "cancel_order", "actor": "ops@example.com"}
        assert "action" not in after

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_service_actions_log_under_their_name(self, commerce: CommerceService) -> None:
        async def operation() -> Dict[str, Any]:
            return dict(structlog.contextvars.get_contextvars())

        result = await commerce._run("reconcile", operation)

        assert result.success is True
        assert result.data["action"] == "reconcile"
        assert "action" not in structlog.contextvars.get_contextvars()


class TestSetupLogging:
    """Test suite for logging configuration."""

    @pytest.mark.unit
    def test_json_rendering_by_default(self, settings: Settings, restore_logging: None) -> None:
        setup_logging(settings)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert redact_sensitive in processors
        assert processors.index(redact_sensitive) == len(processors) - 2
        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    @pytest.mark.unit
    def test_console_rendering(self, settings: Settings, restore_logging: None) -> None:
        setup_logging(settings.model_copy(update={"log_format": "console"}))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    @pytest.mark.unit
    def test_unknown_format_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="log format"):
            Settings(database_url="sqlite+aiosqlite:///:memory:", log_format="xml")
