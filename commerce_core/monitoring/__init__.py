"""Monitoring and observability package."""
from .logging import action_context, setup_logging
from .metrics import metrics

__all__ = ["action_context", "metrics", "setup_logging"]
