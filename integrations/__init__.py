"""External integrations: sibling services, payment provider, notifications."""
from .inventory_client import InventoryClient
from .notifications import NotificationDispatcher
from .payment_provider import PaymentProviderClient, ProviderError
from .webhook_handler import WebhookHandler

__all__ = [
    "InventoryClient",
    "NotificationDispatcher",
    "PaymentProviderClient",
    "ProviderError",
    "WebhookHandler",
]
