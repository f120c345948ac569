"""FastAPI dependencies: service context, caller identity, internal auth."""
import uuid
from typing import Optional

from fastapi import Depends, Header, Request

from core.auth import AuthContext, InternalTokenClaims, verify_internal_token
from core.context import ServiceContext


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def get_request_id(request: Request) -> str:
    """Request id assigned by the request-id middleware."""
    request_id = getattr(request.state, "request_id", None)
    return request_id or str(uuid.uuid4())


def get_auth(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> AuthContext:
    """
    Caller identity from gateway-validated headers.

    Raises:
        AuthError: If no user id is present
    """
    return AuthContext.from_headers(x_user_id, x_user_role)


def require_internal(
    x_internal_token: Optional[str] = Header(default=None),
    context: ServiceContext = Depends(get_context),
) -> InternalTokenClaims:
    """
    Verify the internal service token of a service-to-service call.

    Raises:
        AuthError: Missing, forged or expired token
    """
    return verify_internal_token(x_internal_token, context.settings.internal_service_secret)
