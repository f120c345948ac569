"""Background workers for async processing."""
from .notification_worker import start_notification_worker
from .reconciliation_worker import start_reconciliation_worker

__all__ = ["start_notification_worker", "start_reconciliation_worker"]
