"""
Main FastAPI application.

One codebase serves every saga service; ``SERVICE_ROLE`` picks which
routers a process mounts:
- inventory: stock reads and reserve/release/deduct (internal token)
- orders: order creation and reads
- payments: payment intents and the provider webhook
- all: everything, for local development
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, get_settings
from core.context import ServiceContext
from monitoring.logging import setup_logging

from .responses import register_exception_handlers
from .routes import (
    inventory_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)

ROLE_ROUTERS = {
    "inventory": [inventory_router],
    "orders": [order_router],
    "payments": [payment_router, webhook_router],
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the service context unless one was injected at creation.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        service_role=settings.service_role,
    )

    created = False
    if getattr(app.state, "context", None) is None:
        try:
            app.state.context = await ServiceContext.create(settings)
            created = True
        except Exception as e:
            logger.error("service_context_creation_failed", error=str(e))
            raise

    yield

    logger.info("application_shutdown")
    if created:
        try:
            await app.state.context.close()
        except Exception as e:
            logger.error("service_context_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Assign or propagate the request id used as the saga trace id.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


def create_app(
    settings: Optional[Settings] = None,
    context: Optional[ServiceContext] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Settings to use (defaults to environment settings)
        context: Pre-built service context; the app will not close it
    """
    settings = settings or (context.settings if context else get_settings())
    setup_logging(settings)

    app = FastAPI(
        title="Commerce Order Saga",
        description=(
            "Inventory reservation, order creation, payment webhooks and event "
            "emission for the order fulfillment saga."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)
    register_exception_handlers(app)

    if settings.service_role == "all":
        routers = [router for group in ROLE_ROUTERS.values() for router in group]
    else:
        routers = ROLE_ROUTERS[settings.service_role]
    for router in routers:
        app.include_router(router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "role": settings.service_role,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
