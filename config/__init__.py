"""Configuration package for the order fulfillment services."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
