"""
API routes for the inventory, order and payment services.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.auth import AuthContext, InternalTokenClaims
from core.context import ServiceContext
from core.errors import ServiceUnavailableError, WebhookPayloadError, WebhookSignatureError

from .dependencies import get_auth, get_context, get_request_id, require_internal
from .responses import success
from .schemas import (
    CreateOrderRequest,
    InventoryItemsRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    ReserveResponse,
    ReserveResultResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


@inventory_router.get("/{product_id}", summary="Get stock for a product")
async def get_inventory(
    product_id: str,
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    record = await context.ledger.get_inventory(product_id)
    return success(
        {
            "productId": record.product_id,
            "stockQuantity": record.stock_quantity,
            "reservedQuantity": record.reserved_quantity,
            "available": record.available,
        }
    )


@inventory_router.post(
    "/reserve",
    summary="Reserve stock",
    description="Reserve items in order, stopping at the first item that cannot be reserved",
)
async def reserve_inventory(
    body: InventoryItemsRequest,
    claims: InternalTokenClaims = Depends(require_internal),
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    results = await context.ledger.reserve(body.stock_items(), claims.request_id)
    response = ReserveResponse(
        results=[ReserveResultResponse(product_id=r.product_id, status=r.status) for r in results]
    )
    return success(response.model_dump(by_alias=True, mode="json"))


@inventory_router.post("/release", summary="Release reserved stock")
async def release_inventory(
    body: InventoryItemsRequest,
    claims: InternalTokenClaims = Depends(require_internal),
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    touched = await context.ledger.release(body.stock_items(), claims.request_id)
    return success({"released": touched})


@inventory_router.post("/deduct", summary="Convert reservations into stock decrements")
async def deduct_inventory(
    body: InventoryItemsRequest,
    claims: InternalTokenClaims = Depends(require_internal),
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    deducted = await context.ledger.deduct(body.stock_items(), claims.request_id)
    return success({"deducted": deducted})


@order_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Reserve stock and create a pending order priced from the catalog",
)
async def create_order(
    body: CreateOrderRequest,
    auth: AuthContext = Depends(get_auth),
    request_id: str = Depends(get_request_id),
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    order = await context.orders.create_order(
        auth, body.address_id, body.stock_items(), request_id
    )
    return success(order.to_dict(), status_code=status.HTTP_201_CREATED)


@order_router.get("", summary="List the caller's orders")
async def list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1),
    auth: AuthContext = Depends(get_auth),
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    result = await context.orders.list_orders(auth, page=page, limit=limit)
    return success([order.to_dict() for order in result["orders"]], meta=result["meta"])


@order_router.get("/{order_id}", summary="Get one order")
async def get_order(
    order_id: str,
    auth: AuthContext = Depends(get_auth),
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    order = await context.orders.get_order(order_id, auth)
    return success(order.to_dict())


@payment_router.post(
    "/intent",
    summary="Create a payment intent",
    description="Create the provider order for a pending order; the amount is the stored total",
)
async def create_payment_intent(
    body: PaymentIntentRequest,
    auth: AuthContext = Depends(get_auth),
    request_id: str = Depends(get_request_id),
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    intent = await context.payments.create_intent(body.order_id, auth, request_id)
    response = PaymentIntentResponse.model_validate(intent)
    return success(response.model_dump(by_alias=True))


@webhook_router.post(
    "/payment",
    summary="Payment provider webhook endpoint",
    description="Verify, deduplicate and apply payment provider events",
)
async def payment_webhook(
    request: Request,
    request_id: str = Depends(get_request_id),
    context: ServiceContext = Depends(get_context),
) -> JSONResponse:
    """
    Handle provider webhook events.

    Answers carry only ``{"status": ...}``, never error detail.
    """
    body = await request.body()
    signature = request.headers.get(context.settings.webhook_signature_header)

    try:
        result = await context.payments.handle_webhook(body, signature, request_id)
    except (WebhookSignatureError, WebhookPayloadError) as e:
        logger.warning("api_webhook_rejected", code=e.code)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"status": "rejected"})
    except ServiceUnavailableError:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "retry"}
        )

    return JSONResponse(status_code=status.HTTP_200_OK, content=result)


@monitoring_router.get("/health", summary="Health check")
async def health(context: ServiceContext = Depends(get_context)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await context.health.check_all()


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(context: ServiceContext = Depends(get_context)) -> Dict[str, Any]:
    return await context.health.liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(context: ServiceContext = Depends(get_context)) -> JSONResponse:
    """Readiness probe endpoint; 503 while a dependency is down."""
    result = await context.health.readiness()
    status_code = (
        status.HTTP_200_OK if result["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    )
    return JSONResponse(status_code=status_code, content=result)


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
