"""
Payment provider API client with retry logic and error classification.

Implements:
- Provider order creation (the reference a checkout page pays against)
- Exponential backoff for transient errors and rate limits
- Error classification into transient/permanent/rate-limit
"""
import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import DependencyError
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff


class ProviderError(DependencyError):
    """Raised when the payment provider call fails."""

    def __init__(self, message: str, error_type: ProviderErrorType, status_code: Optional[int] = None):
        super().__init__(message, error_type=error_type.value, status_code=status_code)
        self.error_type = error_type
        self.status_code = status_code


class ProviderOrder(BaseModel):
    """Provider-side order created for one of our orders."""

    id: str
    amount: int
    currency: str
    status: Optional[str] = None


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.error_type != ProviderErrorType.PERMANENT


class PaymentProviderClient:
    """
    HTTP client for the payment provider's orders API.

    Amounts are in minor currency units (paise for INR).
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        key_id: str,
        key_secret: str,
        timeout_seconds: float = 10.0,
    ):
        self.http = http_client
        self.base_url = base_url.rstrip("/")
        self.auth = httpx.BasicAuth(key_id, key_secret)
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def _classify_status(status_code: int) -> ProviderErrorType:
        if status_code == 429:
            return ProviderErrorType.RATE_LIMIT
        if status_code >= 500:
            return ProviderErrorType.TRANSIENT
        return ProviderErrorType.PERMANENT

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> ProviderOrder:
        """
        Create a provider order.

        Args:
            amount_minor: Amount in minor units
            currency: Currency code
            receipt: Our order id, echoed back by the provider
            notes: Extra key/values stored with the provider order

        Raises:
            ProviderError: If the call ultimately fails
        """
        logger.info(
            "creating_provider_order",
            amount_minor=amount_minor,
            currency=currency,
            receipt=receipt,
        )
        started = time.perf_counter()

        try:
            response = await self.http.post(
                f"{self.base_url}/orders",
                json={
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes or {},
                },
                auth=self.auth,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            metrics.record_dependency_call("payment_provider", "error", time.perf_counter() - started)
            logger.error(
                "provider_api_error",
                error_type=ProviderErrorType.TRANSIENT.value,
                error_message=str(e),
            )
            raise ProviderError(str(e) or type(e).__name__, ProviderErrorType.TRANSIENT) from e

        duration = time.perf_counter() - started
        if not response.is_success:
            error_type = self._classify_status(response.status_code)
            metrics.record_dependency_call(
                "payment_provider", f"http_{response.status_code}", duration
            )
            logger.error(
                "provider_api_error",
                error_type=error_type.value,
                status_code=response.status_code,
            )
            raise ProviderError(
                f"Provider answered {response.status_code}", error_type, response.status_code
            )

        metrics.record_dependency_call("payment_provider", "ok", duration)
        order = ProviderOrder.model_validate(response.json())
        logger.info("provider_order_created", provider_order_id=order.id, receipt=receipt)
        return order
