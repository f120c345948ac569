"""
Caller identity and internal service tokens.

External requests arrive with a gateway-validated user id and role; that
pair is turned into an ``AuthContext`` once at the HTTP boundary and passed
explicitly from there on.

Service-to-service calls carry a short-lived token of the form
``base64url(json payload).hex(hmac_sha256(payload))`` where the payload is
``{service, requestId, iat, exp}``.
"""
import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from core.errors import AuthError

ADMIN_ROLE = "admin"
INTERNAL_TOKEN_HEADER = "x-internal-token"
REQUEST_ID_HEADER = "x-request-id"


class AuthContext(BaseModel):
    """Validated identity of the caller."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @classmethod
    def from_headers(cls, user_id: Optional[str], role: Optional[str]) -> "AuthContext":
        """
        Build the context from gateway headers.

        Raises:
            AuthError: If no user id was supplied
        """
        if not user_id or not user_id.strip():
            raise AuthError("Missing user identity")
        return cls(user_id=user_id.strip(), role=(role or "customer").strip().lower())


class InternalTokenClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    service: str
    request_id: str
    iat: int
    exp: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def sign_internal_token(
    service: str,
    request_id: str,
    secret: str,
    ttl_seconds: int = 60,
    now: Optional[float] = None,
) -> str:
    """
    Create a signed internal token.

    Args:
        service: Name of the calling service
        request_id: Trace id of the request being served
        secret: Shared HMAC secret
        ttl_seconds: Token lifetime
        now: Override for the current epoch time

    Returns:
        str: Token string
    """
    issued_at = int(now if now is not None else time.time())
    claims: Dict[str, Any] = {
        "service": service,
        "requestId": request_id,
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
    }
    payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode())
    return f"{payload}.{_sign(payload, secret)}"


def verify_internal_token(
    token: Optional[str], secret: str, now: Optional[float] = None
) -> InternalTokenClaims:
    """
    Verify structure, signature and expiry of an internal token.

    Raises:
        AuthError: If the token is missing, malformed, forged, or expired
    """
    if not token:
        raise AuthError("Missing internal token")

    parts = token.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise AuthError("Malformed internal token")

    payload, signature = parts
    if not hmac.compare_digest(
        _sign(payload, secret).encode(), signature.encode("utf-8", "replace")
    ):
        raise AuthError("Invalid internal token signature")

    try:
        claims = json.loads(_b64decode(payload))
        parsed = InternalTokenClaims(
            service=claims["service"],
            request_id=claims["requestId"],
            iat=claims["iat"],
            exp=claims["exp"],
        )
    except (ValueError, KeyError, TypeError) as e:
        raise AuthError("Malformed internal token") from e

    current = now if now is not None else time.time()
    if parsed.exp < current:
        raise AuthError("Internal token expired")

    return parsed
