"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CreateOrderRequest,
    InventoryItemsRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    ReserveResponse,
)

__all__ = [
    "app",
    "create_app",
    "CreateOrderRequest",
    "InventoryItemsRequest",
    "PaymentIntentRequest",
    "PaymentIntentResponse",
    "ReserveResponse",
]
