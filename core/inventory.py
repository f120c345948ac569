"""
Inventory ledger: per-product stock and reservation counters.

Every mutation is a single conditional UPDATE so concurrent requests racing
for the last units are serialized by the database, never by application
code reading then writing.
"""
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import NotFoundError, ValidationError
from database.models import InventoryRecord, utc_now
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReservationStatus(str, Enum):
    """Outcome of reserving one item."""

    RESERVED = "RESERVED"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


class StockItem(BaseModel):
    """A product id and quantity, the unit of every ledger operation."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class ReserveResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    status: ReservationStatus


class InventoryGateway(Protocol):
    """What the order coordinator, payment gateway and reconciler need from inventory."""

    async def reserve(
        self, items: List[StockItem], request_id: Optional[str] = None
    ) -> List[ReserveResult]:
        ...

    async def release(self, items: List[StockItem], request_id: Optional[str] = None) -> None:
        ...

    async def deduct(self, items: List[StockItem], request_id: Optional[str] = None) -> None:
        ...


def merge_items(items: Iterable[StockItem]) -> List[StockItem]:
    """Sum quantities of repeated product ids, keeping first-seen order."""
    totals: Dict[str, int] = {}
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return [StockItem(product_id=pid, quantity=qty) for pid, qty in totals.items()]


def _require_items(items: List[StockItem]) -> None:
    if not items:
        raise ValidationError("At least one item is required")


class InventoryLedger:
    """
    Atomic reserve/release/deduct over the inventory table.

    The ledger does no idempotency bookkeeping; callers invoke each
    operation at most once per logical event.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_inventory(self, product_id: str) -> InventoryRecord:
        """
        Load one inventory record.

        Raises:
            NotFoundError: If the product has no inventory record
        """
        async with self.session_factory() as session:
            record = await session.get(InventoryRecord, product_id)
        if record is None:
            raise NotFoundError(f"No inventory for product {product_id}")
        return record

    async def reserve(
        self, items: List[StockItem], request_id: Optional[str] = None
    ) -> List[ReserveResult]:
        """
        Reserve each item in order, stopping at the first failure.

        Each item is its own transaction, so items before a failing one stay
        reserved; the caller releases them. An unknown product counts as
        insufficient stock.

        Returns:
            List[ReserveResult]: One result per processed item
        """
        _require_items(items)
        results: List[ReserveResult] = []

        for item in items:
            stmt = (
                update(InventoryRecord)
                .where(
                    InventoryRecord.product_id == item.product_id,
                    InventoryRecord.stock_quantity - InventoryRecord.reserved_quantity
                    >= item.quantity,
                )
                .values(
                    reserved_quantity=InventoryRecord.reserved_quantity + item.quantity,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)

            if result.rowcount == 1:
                results.append(
                    ReserveResult(product_id=item.product_id, status=ReservationStatus.RESERVED)
                )
                metrics.record_inventory_operation("reserve", "reserved")
                continue

            results.append(
                ReserveResult(
                    product_id=item.product_id, status=ReservationStatus.INSUFFICIENT_STOCK
                )
            )
            metrics.record_inventory_operation("reserve", "insufficient_stock")
            logger.info(
                "inventory_reserve_insufficient",
                product_id=item.product_id,
                quantity=item.quantity,
                request_id=request_id,
            )
            break

        logger.info(
            "inventory_reserved",
            requested=len(items),
            reserved=sum(1 for r in results if r.status == ReservationStatus.RESERVED),
            request_id=request_id,
        )
        return results

    async def release(self, items: List[StockItem], request_id: Optional[str] = None) -> int:
        """
        Return reserved units to availability.

        Decrements are floor-clamped at zero, so releasing an amount that was
        already released is harmless.

        Returns:
            int: Number of inventory rows touched
        """
        _require_items(items)
        touched = 0

        async with self.session_factory() as session:
            async with session.begin():
                for item in items:
                    stmt = (
                        update(InventoryRecord)
                        .where(InventoryRecord.product_id == item.product_id)
                        .values(
                            reserved_quantity=case(
                                (
                                    InventoryRecord.reserved_quantity >= item.quantity,
                                    InventoryRecord.reserved_quantity - item.quantity,
                                ),
                                else_=0,
                            ),
                            updated_at=utc_now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                    touched += result.rowcount

        metrics.record_inventory_operation("release", "applied", touched)
        logger.info("inventory_released", items=len(items), touched=touched, request_id=request_id)
        return touched

    async def deduct(self, items: List[StockItem], request_id: Optional[str] = None) -> int:
        """
        Convert reservations into permanent stock decrements.

        An item whose stock is lower than the quantity is skipped and logged.

        Returns:
            int: Number of items deducted
        """
        _require_items(items)
        deducted = 0

        async with self.session_factory() as session:
            async with session.begin():
                for item in items:
                    stmt = (
                        update(InventoryRecord)
                        .where(
                            InventoryRecord.product_id == item.product_id,
                            InventoryRecord.stock_quantity >= item.quantity,
                        )
                        .values(
                            stock_quantity=InventoryRecord.stock_quantity - item.quantity,
                            reserved_quantity=case(
                                (
                                    InventoryRecord.reserved_quantity >= item.quantity,
                                    InventoryRecord.reserved_quantity - item.quantity,
                                ),
                                else_=0,
                            ),
                            updated_at=utc_now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                    if result.rowcount == 1:
                        deducted += 1
                    else:
                        logger.warning(
                            "inventory_deduct_skipped",
                            product_id=item.product_id,
                            quantity=item.quantity,
                            request_id=request_id,
                        )
                        metrics.record_inventory_operation("deduct", "skipped")

        metrics.record_inventory_operation("deduct", "applied", deducted)
        logger.info("inventory_deducted", items=len(items), deducted=deducted, request_id=request_id)
        return deducted

