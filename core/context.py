"""
Process-scoped service context.

Owns every client handle one process needs (database engine, Redis,
HTTP client) and the components built on them. Created once at startup
and passed explicitly to whatever needs it.
"""
from dataclasses import dataclass, field
from typing import Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from config import Settings
from core.event_log import EventLog
from core.idempotency import IdempotencyGuard
from core.inventory import InventoryGateway, InventoryLedger
from core.orders import OrderCoordinator
from core.payments import PaymentGateway
from core.reconciliation import ReservationReconciler
from database.connection import create_engine_from_settings, create_session_factory, init_db
from integrations.inventory_client import InventoryClient
from integrations.payment_provider import PaymentProviderClient
from integrations.webhook_handler import WebhookHandler
from monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContext:
    """Client handles and components for one process."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    redis: aioredis.Redis
    http: httpx.AsyncClient
    event_log: EventLog
    ledger: InventoryLedger
    inventory: InventoryGateway
    orders: OrderCoordinator
    payments: PaymentGateway
    reconciler: ReservationReconciler
    health: HealthCheck
    owns_clients: bool = field(default=True)

    @classmethod
    def build(
        cls,
        settings: Settings,
        engine: AsyncEngine,
        redis_client: aioredis.Redis,
        http_client: httpx.AsyncClient,
        inventory: Optional[InventoryGateway] = None,
        provider: Optional[PaymentProviderClient] = None,
        owns_clients: bool = True,
    ) -> "ServiceContext":
        """
        Wire components around existing client handles.

        ``inventory`` defaults to the HTTP client for the inventory service;
        ``provider`` defaults to the configured payment provider.
        """
        session_factory = create_session_factory(engine)
        event_log = EventLog(redis_client, settings.event_stream_prefix)
        ledger = InventoryLedger(session_factory)

        if inventory is None:
            inventory = InventoryClient(
                httpx.AsyncClient(base_url=settings.inventory_service_url),
                service_name=settings.service_role,
                secret=settings.internal_service_secret,
                token_ttl_seconds=settings.internal_token_ttl_seconds,
                timeout_seconds=settings.internal_call_timeout_seconds,
            )
        if provider is None:
            provider = PaymentProviderClient(
                http_client,
                base_url=settings.payment_provider_url,
                key_id=settings.payment_provider_key_id,
                key_secret=settings.payment_provider_key_secret,
            )

        guard = IdempotencyGuard(redis_client, settings.webhook_idempotency_ttl_seconds)
        webhook_handler = WebhookHandler(settings.payment_webhook_secret, guard)

        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            redis=redis_client,
            http=http_client,
            event_log=event_log,
            ledger=ledger,
            inventory=inventory,
            orders=OrderCoordinator(session_factory, inventory, event_log),
            payments=PaymentGateway(
                session_factory,
                provider,
                inventory,
                event_log,
                webhook_handler,
                provider_name=settings.payment_provider,
                currency=settings.payment_currency,
            ),
            reconciler=ReservationReconciler(
                session_factory, inventory, settings.reservation_timeout_seconds
            ),
            health=HealthCheck(session_factory, redis_client),
            owns_clients=owns_clients,
        )

    @classmethod
    async def create(cls, settings: Settings) -> "ServiceContext":
        """Create clients from settings and wire the components."""
        engine = create_engine_from_settings(settings)
        if settings.create_tables_on_startup:
            await init_db(engine)

        redis_client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        http_client = httpx.AsyncClient()

        context = cls.build(settings, engine, redis_client, http_client)
        logger.info(
            "service_context_created",
            service_role=settings.service_role,
            app_env=settings.app_env,
        )
        return context

    async def close(self) -> None:
        """Dispose of the client handles this context created."""
        if not self.owns_clients:
            return
        if isinstance(self.inventory, InventoryClient):
            await self.inventory.http.aclose()
        await self.http.aclose()
        await self.redis.aclose()
        await self.engine.dispose()
        logger.info("service_context_closed")
