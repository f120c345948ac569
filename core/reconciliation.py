"""
Reservation reconciler.

Releases inventory held by order reservations that never reached a saved
order, e.g. because the order service died between reserving stock and
persisting the order. A row is flipped to ``expired`` before its stock is
released, so an order creation still in flight for it fails instead of
saving an order without a reservation.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.inventory import InventoryGateway
from core.orders import items_from_json
from database.models import OrderReservation, utc_now
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReservationReconciler:
    """
    Periodic sweep over stale pending reservations.

    Args:
        session_factory: Session factory for the orders database
        inventory: Inventory gateway used to release stock
        timeout_seconds: Age after which a pending reservation is stale
        batch_size: Max rows handled per run
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        inventory: InventoryGateway,
        timeout_seconds: int = 900,
        batch_size: int = 100,
    ):
        self.session_factory = session_factory
        self.inventory = inventory
        self.timeout_seconds = timeout_seconds
        self.batch_size = batch_size

    async def release_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Expire and release stale reservations.

        Returns:
            Dict[str, int]: ``{"checked", "released", "failed"}``
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.timeout_seconds)

        async with self.session_factory() as session:
            result = await session.execute(
                select(OrderReservation)
                .where(
                    OrderReservation.status == "pending",
                    OrderReservation.created_at < cutoff,
                )
                .order_by(OrderReservation.created_at)
                .limit(self.batch_size)
            )
            stale = list(result.scalars())

        released = 0
        failed = 0
        for reservation in stale:
            log = logger.bind(
                reservation_id=str(reservation.id),
                request_id=reservation.request_id,
            )
            if not await self._transition(reservation, "pending", "expired"):
                log.info("reservation_no_longer_pending")
                continue

            try:
                await self.inventory.release(
                    items_from_json(reservation.items), reservation.request_id
                )
                released += 1
                log.info("stale_reservation_released", items=len(reservation.items))
            except Exception as e:
                failed += 1
                # Back to pending so the next run retries it
                await self._transition(reservation, "expired", "pending")
                log.error(
                    "stale_reservation_release_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

        metrics.record_reconciliation(released, failed)
        summary = {"checked": len(stale), "released": released, "failed": failed}
        logger.info("reservation_reconciliation_completed", **summary)
        return summary

    async def _transition(
        self, reservation: OrderReservation, expected: str, new_status: str
    ) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(OrderReservation)
                    .where(
                        OrderReservation.id == reservation.id,
                        OrderReservation.status == expected,
                    )
                    .values(status=new_status, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1
