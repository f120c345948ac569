"""
HTTP client for the inventory service.

Every call carries a freshly signed internal token and the caller's request
id, and is bounded by a timeout. Failures surface as ``DependencyError``;
``outcome_unknown`` in its details tells the caller whether the inventory
service may have applied the operation anyway (read/write timeouts, transport
errors after the request went out, 5xx answers). A refused or unestablished
connection is a known no-op.
"""
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog

from core.auth import INTERNAL_TOKEN_HEADER, REQUEST_ID_HEADER, sign_internal_token
from core.errors import DependencyError
from core.inventory import ReservationStatus, ReserveResult, StockItem
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class InventoryClient:
    """
    Inventory service client implementing the ``InventoryGateway`` protocol.

    Args:
        http_client: Shared client; its base URL points at the inventory service
        service_name: Name placed in internal tokens
        secret: Shared internal token secret
        token_ttl_seconds: Lifetime of each token
        timeout_seconds: Per-call timeout
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        service_name: str,
        secret: str,
        token_ttl_seconds: int = 60,
        timeout_seconds: float = 5.0,
    ):
        self.http = http_client
        self.service_name = service_name
        self.secret = secret
        self.token_ttl_seconds = token_ttl_seconds
        self.timeout_seconds = timeout_seconds

    def _headers(self, request_id: Optional[str]) -> Dict[str, str]:
        request_id = request_id or "internal"
        return {
            INTERNAL_TOKEN_HEADER: sign_internal_token(
                self.service_name, request_id, self.secret, self.token_ttl_seconds
            ),
            REQUEST_ID_HEADER: request_id,
        }

    async def _post(
        self, operation: str, items: List[StockItem], request_id: Optional[str]
    ) -> Dict[str, Any]:
        body = {
            "items": [{"productId": item.product_id, "quantity": item.quantity} for item in items]
        }
        started = time.perf_counter()
        try:
            response = await self.http.post(
                f"/inventory/{operation}",
                json=body,
                headers=self._headers(request_id),
                timeout=self.timeout_seconds,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # Never sent, so nothing can have been applied
            metrics.record_dependency_call("inventory", "unreachable", time.perf_counter() - started)
            logger.error(
                "inventory_call_unreachable",
                operation=operation,
                request_id=request_id,
                error_type=type(e).__name__,
            )
            raise DependencyError(
                f"Inventory {operation} unreachable", outcome_unknown=False
            ) from e
        except httpx.TimeoutException as e:
            metrics.record_dependency_call("inventory", "timeout", time.perf_counter() - started)
            logger.error("inventory_call_timeout", operation=operation, request_id=request_id)
            raise DependencyError(
                f"Inventory {operation} timed out", outcome_unknown=True
            ) from e
        except httpx.HTTPError as e:
            metrics.record_dependency_call("inventory", "error", time.perf_counter() - started)
            logger.error(
                "inventory_call_failed",
                operation=operation,
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise DependencyError(
                f"Inventory {operation} failed", outcome_unknown=True
            ) from e

        duration = time.perf_counter() - started
        if response.is_success:
            metrics.record_dependency_call("inventory", "ok", duration)
            return response.json()

        metrics.record_dependency_call("inventory", f"http_{response.status_code}", duration)
        logger.error(
            "inventory_call_rejected",
            operation=operation,
            status_code=response.status_code,
            request_id=request_id,
        )
        raise DependencyError(
            f"Inventory {operation} answered {response.status_code}",
            outcome_unknown=response.status_code >= 500,
            status_code=response.status_code,
        )

    async def reserve(
        self, items: List[StockItem], request_id: Optional[str] = None
    ) -> List[ReserveResult]:
        """
        Reserve items on the inventory service.

        Returns:
            List[ReserveResult]: Per-item results as reported by the service

        Raises:
            DependencyError: On timeout, transport failure, or non-2xx answer
        """
        payload = await self._post("reserve", items, request_id)
        results = payload.get("data", {}).get("results", [])
        return [
            ReserveResult(product_id=r["productId"], status=ReservationStatus(r["status"]))
            for r in results
        ]

    async def release(self, items: List[StockItem], request_id: Optional[str] = None) -> None:
        await self._post("release", items, request_id)

    async def deduct(self, items: List[StockItem], request_id: Optional[str] = None) -> None:
        await self._post("deduct", items, request_id)
