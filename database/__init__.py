"""Database package for the order fulfillment services."""
from .connection import create_engine_from_settings, create_session_factory, init_db
from .models import (
    Base,
    InventoryRecord,
    Order,
    OrderItem,
    OrderReservation,
    Payment,
    Product,
)

__all__ = [
    "Base",
    "Product",
    "InventoryRecord",
    "Order",
    "OrderItem",
    "Payment",
    "OrderReservation",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
]
