"""
Tests for releasing stock held by reservations that never became orders.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from core.errors import DependencyError
from core.inventory import InventoryLedger
from core.reconciliation import ReservationReconciler
from database.models import OrderReservation, utc_now
from tests.conftest import get_record, seed_product


async def add_reservation(
    session_factory, status: str = "pending", age_seconds: int = 3600, quantity: int = 2
) -> OrderReservation:
    reservation = OrderReservation(
        user_id="user-1",
        request_id="req-crashed",
        items=[{"productId": "P1", "quantity": quantity}],
        status=status,
        created_at=utc_now() - timedelta(seconds=age_seconds),
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(reservation)
    return reservation


async def reservation_status(session_factory, reservation: OrderReservation) -> str:
    async with session_factory() as session:
        return (await session.get(OrderReservation, reservation.id)).status


class TestReservationReconciler:
    """A crash between reserve and persist leaves a pending row behind."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_pending_reservation_released(
        self, session_factory, ledger: InventoryLedger
    ) -> None:
        await seed_product(session_factory, "P1", "10.00", stock=10, reserved=2)
        reservation = await add_reservation(session_factory)
        reconciler = ReservationReconciler(session_factory, ledger, timeout_seconds=900)

        summary = await reconciler.release_stale()

        assert summary == {"checked": 1, "released": 1, "failed": 0}
        assert await reservation_status(session_factory, reservation) == "expired"
        assert (await get_record(session_factory, "P1")).reserved_quantity == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recent_and_finished_reservations_untouched(
        self, session_factory, ledger: InventoryLedger
    ) -> None:
        await seed_product(session_factory, "P1", "10.00", stock=10, reserved=6)
        recent = await add_reservation(session_factory, age_seconds=10)
        completed = await add_reservation(session_factory, status="completed")
        compensated = await add_reservation(session_factory, status="compensated")
        reconciler = ReservationReconciler(session_factory, ledger, timeout_seconds=900)

        summary = await reconciler.release_stale()

        assert summary["checked"] == 0
        assert await reservation_status(session_factory, recent) == "pending"
        assert await reservation_status(session_factory, completed) == "completed"
        assert await reservation_status(session_factory, compensated) == "compensated"
        assert (await get_record(session_factory, "P1")).reserved_quantity == 6

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_release_is_retried_next_run(self, session_factory) -> None:
        reservation = await add_reservation(session_factory)
        inventory = AsyncMock()
        inventory.release.side_effect = [DependencyError("unreachable"), None]
        reconciler = ReservationReconciler(session_factory, inventory, timeout_seconds=900)

        first = await reconciler.release_stale()
        assert first == {"checked": 1, "released": 0, "failed": 1}
        assert await reservation_status(session_factory, reservation) == "pending"

        second = await reconciler.release_stale()
        assert second == {"checked": 1, "released": 1, "failed": 0}
        assert await reservation_status(session_factory, reservation) == "expired"
        assert inventory.release.await_args.args[1] == "req-crashed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_custom_clock(self, session_factory, ledger: InventoryLedger) -> None:
        await seed_product(session_factory, "P1", "10.00", stock=10, reserved=2)
        await add_reservation(session_factory, age_seconds=0)
        reconciler = ReservationReconciler(session_factory, ledger, timeout_seconds=900)

        summary = await reconciler.release_stale(now=utc_now() + timedelta(seconds=1000))

        assert summary["released"] == 1
