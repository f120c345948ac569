"""Core order fulfillment saga logic."""
from .auth import AuthContext
from .errors import CommerceError

__all__ = ["AuthContext", "CommerceError"]
