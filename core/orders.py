"""
Order coordinator: creates orders through a compensated saga and serves
order reads.

Order creation steps:
1. Record the reservation intent (``order_reservations`` row, pending)
2. Reserve inventory, keeping an explicit undo list
3. Persist the order and flip the reservation row to completed, atomically
4. Emit ORDER_CREATED

Any failure after step 1 releases whatever was reserved before the error
reaches the caller. A crash in between leaves a pending reservation row
for the reconciler.
"""
import math
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.auth import AuthContext
from core.errors import (
    CommerceError,
    DependencyError,
    InsufficientStockError,
    InvalidProductsError,
    NotFoundError,
    OrderCreateError,
    ReservationExpiredError,
    ValidationError,
)
from core.event_log import EventLog
from core.events import OrderCreated
from core.inventory import InventoryGateway, ReservationStatus, StockItem, merge_items
from core.saga import Saga
from database.models import Order, OrderItem, OrderReservation, Product, utc_now
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 50
CENT = Decimal("0.01")


def items_to_json(items: List[StockItem]) -> List[Dict[str, Any]]:
    return [{"productId": item.product_id, "quantity": item.quantity} for item in items]


def items_from_json(data: List[Dict[str, Any]]) -> List[StockItem]:
    return [StockItem(product_id=d["productId"], quantity=int(d["quantity"])) for d in data]


class OrderCoordinator:
    """
    Orchestrates order creation and owns order lifecycle reads.

    Args:
        session_factory: Session factory for the orders database
        inventory: Inventory gateway (HTTP client in production)
        event_log: Event log receiving ORDER_CREATED
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        inventory: InventoryGateway,
        event_log: EventLog,
    ):
        self.session_factory = session_factory
        self.inventory = inventory
        self.event_log = event_log

    async def create_order(
        self,
        auth: AuthContext,
        address_id: str,
        items: List[StockItem],
        request_id: str,
    ) -> Order:
        """
        Create an order for the caller.

        Prices come from the catalog at the time of the call; any total the
        client may have computed is never consulted.

        Raises:
            ValidationError: Empty item list or missing address
            InvalidProductsError: A product is unknown or inactive
            InsufficientStockError: An item could not be reserved
            DependencyError: Inventory service unreachable or failing
            ReservationExpiredError: The reconciler released the stock first
            OrderCreateError: The order could not be persisted
        """
        started = time.perf_counter()
        log = logger.bind(user_id=auth.user_id, request_id=request_id)

        try:
            order = await self._create_order(auth, address_id, items, request_id, log)
        except CommerceError as e:
            metrics.record_order_created(e.code.lower(), time.perf_counter() - started)
            raise

        metrics.record_order_created("created", time.perf_counter() - started)
        await self.event_log.publish(
            OrderCreated(
                order_id=str(order.id),
                user_id=order.user_id,
                total_amount=f"{order.total_amount:.2f}",
                request_id=request_id,
            )
        )
        return order

    async def _create_order(
        self,
        auth: AuthContext,
        address_id: str,
        items: List[StockItem],
        request_id: str,
        log: Any,
    ) -> Order:
        if not address_id or not address_id.strip():
            raise ValidationError("addressId is required")
        items = merge_items(items)
        if not items:
            raise ValidationError("At least one item is required")

        products = await self._load_products([item.product_id for item in items])
        invalid = [
            item.product_id
            for item in items
            if item.product_id not in products or not products[item.product_id].is_active
        ]
        if invalid:
            log.info("order_invalid_products", product_ids=invalid)
            raise InvalidProductsError(product_ids=invalid)

        saga = Saga(name="create_order", saga_id=request_id)
        ctx = saga.context
        ctx["reserved"] = []

        async def record_reservation(ctx: Dict[str, Any]) -> uuid.UUID:
            reservation = OrderReservation(
                user_id=auth.user_id,
                request_id=request_id,
                items=items_to_json(items),
                status="pending",
            )
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        session.add(reservation)
            except Exception as e:
                log.error("order_reservation_log_failed", error=str(e))
                raise OrderCreateError() from e
            ctx["reservation_id"] = reservation.id
            return reservation.id

        async def mark_compensated(ctx: Dict[str, Any]) -> None:
            if ctx.get("release_failed") or ctx.get("reservation_expired"):
                return
            await self._set_reservation_status(ctx["reservation_id"], "pending", "compensated")

        async def reserve_inventory(ctx: Dict[str, Any]) -> List[StockItem]:
            try:
                results = await self.inventory.reserve(items, request_id)
            except DependencyError as e:
                if e.details.get("outcome_unknown"):
                    ctx["reserved"] = list(items)
                raise

            reserved_ids = {r.product_id for r in results if r.status == ReservationStatus.RESERVED}
            ctx["reserved"] = [item for item in items if item.product_id in reserved_ids]

            if len(ctx["reserved"]) != len(items):
                failed = next(
                    (r.product_id for r in results if r.status != ReservationStatus.RESERVED),
                    None,
                )
                raise InsufficientStockError(failed)
            return ctx["reserved"]

        async def release_inventory(ctx: Dict[str, Any]) -> None:
            undo: List[StockItem] = ctx["reserved"]
            if not undo or ctx.get("reservation_expired"):
                return
            try:
                await self.inventory.release(undo, request_id)
            except Exception:
                ctx["release_failed"] = True
                await self._narrow_reservation(ctx["reservation_id"], undo)
                raise
            log.info("order_reservation_released", items=len(undo))

        async def persist_order(ctx: Dict[str, Any]) -> Order:
            try:
                return await self._persist_order(
                    auth, address_id, items, products, ctx["reservation_id"]
                )
            except ReservationExpiredError:
                ctx["reservation_expired"] = True
                raise
            except CommerceError:
                raise
            except Exception as e:
                log.error("order_persist_failed", error=str(e), error_type=type(e).__name__)
                raise OrderCreateError() from e

        saga.add_step("record_reservation", record_reservation, mark_compensated)
        saga.add_step(
            "reserve_inventory", reserve_inventory, release_inventory, compensate_on_failure=True
        )
        saga.add_step("persist_order", persist_order)

        result = await saga.execute()
        order: Order = result["persist_order_result"]
        log.info(
            "order_created",
            order_id=str(order.id),
            total_amount=f"{order.total_amount:.2f}",
            items=len(items),
        )
        return order

    async def _load_products(self, product_ids: List[str]) -> Dict[str, Product]:
        async with self.session_factory() as session:
            result = await session.execute(select(Product).where(Product.id.in_(product_ids)))
            return {product.id: product for product in result.scalars()}

    async def _persist_order(
        self,
        auth: AuthContext,
        address_id: str,
        items: List[StockItem],
        products: Dict[str, Product],
        reservation_id: uuid.UUID,
    ) -> Order:
        order_items = []
        for item in items:
            product = products[item.product_id]
            unit_price = product.effective_price.quantize(CENT)
            order_items.append(
                OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    line_total=(unit_price * item.quantity).quantize(CENT),
                )
            )
        total = sum((oi.line_total for oi in order_items), Decimal("0.00")).quantize(CENT)

        order = Order(
            id=uuid.uuid4(),
            user_id=auth.user_id,
            address_id=address_id.strip(),
            status="pending",
            payment_status="pending",
            total_amount=total,
            items=order_items,
        )

        async with self.session_factory() as session:
            async with session.begin():
                session.add(order)
                await session.flush()
                result = await session.execute(
                    update(OrderReservation)
                    .where(
                        OrderReservation.id == reservation_id,
                        OrderReservation.status == "pending",
                    )
                    .values(status="completed", order_id=order.id, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ReservationExpiredError()
        return order

    async def _set_reservation_status(
        self, reservation_id: uuid.UUID, expected: str, new_status: str
    ) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(OrderReservation)
                    .where(
                        OrderReservation.id == reservation_id,
                        OrderReservation.status == expected,
                    )
                    .values(status=new_status, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def _narrow_reservation(self, reservation_id: uuid.UUID, undo: List[StockItem]) -> None:
        """Keep only the items actually reserved on a row left for the reconciler."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(OrderReservation)
                        .where(
                            OrderReservation.id == reservation_id,
                            OrderReservation.status == "pending",
                        )
                        .values(items=items_to_json(undo), updated_at=utc_now())
                        .execution_options(synchronize_session=False)
                    )
        except Exception as e:
            logger.error(
                "order_reservation_narrow_failed",
                reservation_id=str(reservation_id),
                error=str(e),
            )

    async def get_order(self, order_id: str, auth: AuthContext) -> Order:
        """
        Load one order visible to the caller.

        Orders of other users are reported as not found, never as forbidden.

        Raises:
            NotFoundError: Unknown id or not visible to the caller
        """
        order_uuid = _parse_uuid(order_id)
        if order_uuid is not None:
            async with self.session_factory() as session:
                order = await session.get(Order, order_uuid)
            if order is not None and (auth.is_admin or order.user_id == auth.user_id):
                return order
        raise NotFoundError("Order not found")

    async def list_orders(self, auth: AuthContext, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """
        List the caller's orders, newest first.

        Returns:
            Dict[str, Any]: ``{"orders": [...], "meta": {total, page, limit, totalPages}}``
        """
        page = max(page, 1)
        limit = max(min(limit, MAX_PAGE_SIZE), 1)

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(Order).where(Order.user_id == auth.user_id)
            )
            result = await session.execute(
                select(Order)
                .where(Order.user_id == auth.user_id)
                .order_by(Order.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            orders = list(result.scalars())

        total = total or 0
        return {
            "orders": orders,
            "meta": {
                "total": total,
                "page": page,
                "limit": limit,
                "totalPages": math.ceil(total / limit) if total else 0,
            },
        }


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
