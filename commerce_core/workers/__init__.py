"""Background workers for webhook delivery and reconciliation."""
from .reconciliation_worker import run_reconciliation_cycle, start_reconciliation_worker
from .webhook_dispatcher import WebhookDispatcher, start_webhook_dispatcher

__all__ = [
    "WebhookDispatcher",
    "run_reconciliation_cycle",
    "start_reconciliation_worker",
    "start_webhook_dispatcher",
]
