"""SQLAlchemy database models for the order fulfillment saga."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER primary keys
BigIntId = BigInteger().with_variant(Integer, "sqlite")
JsonType = JSON().with_variant(JSONB, "postgresql")
Money = Numeric(12, 2)

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "failed", "cancelled", "refunded")
ORDER_PAYMENT_STATUSES = ("pending", "paid", "failed")
PAYMENT_STATUSES = ("initiated", "successful", "failed", "refunded")
RESERVATION_STATUSES = ("pending", "completed", "compensated", "expired")


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _in(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Catalog products.

    Owned by the catalog service; read here only to snapshot names and
    prices at order time.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def effective_price(self) -> Decimal:
        """Price charged right now: the discount price when one is set."""
        return self.discount_price if self.discount_price is not None else self.price

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, price={self.price}, active={self.is_active})>"


class InventoryRecord(Base):
    """
    Per-product stock and reservation counters.

    Mutated exclusively through the ledger's reserve/release/deduct
    statements, each a single conditional UPDATE.
    """

    __tablename__ = "inventory"

    product_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="non_negative_stock"),
        CheckConstraint("reserved_quantity >= 0", name="non_negative_reserved"),
        CheckConstraint("reserved_quantity <= stock_quantity", name="reserved_within_stock"),
    )

    @property
    def available(self) -> int:
        return self.stock_quantity - self.reserved_quantity

    def __repr__(self) -> str:
        """String representation of InventoryRecord."""
        return (
            f"<InventoryRecord(product_id={self.product_id}, stock={self.stock_quantity}, "
            f"reserved={self.reserved_quantity})>"
        )


class Order(Base):
    """
    Customer orders.

    Created by the order coordinator; afterwards only the payment webhook
    moves its status. Never hard-deleted.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    address_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    provider_order_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    provider_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", lazy="selectin", order_by="OrderItem.id"
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="non_negative_total"),
        CheckConstraint(_in("status", ORDER_STATUSES), name="valid_order_status"),
        CheckConstraint(_in("payment_status", ORDER_PAYMENT_STATUSES), name="valid_payment_status"),
        Index("idx_orders_user_created", "user_id", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses; money as 2-decimal strings."""
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "address_id": self.address_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "total_amount": f"{self.total_amount:.2f}",
            "provider_order_id": self.provider_order_id,
            "items": [item.to_dict() for item in self.items],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, user_id={self.user_id}, "
            f"total={self.total_amount}, status={self.status})>"
        )


class OrderItem(Base):
    """Order line with product name and unit price snapshotted at order time."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Money, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": f"{self.unit_price:.2f}",
            "line_total": f"{self.line_total:.2f}",
        }


class Payment(Base):
    """
    Payment records.

    Created as ``initiated`` when a payment intent is requested and
    updated at most once by a verified provider webhook.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    provider_payment_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(_in("status", PAYMENT_STATUSES), name="valid_status"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class OrderReservation(Base):
    """
    Saga log for order creation.

    Committed as ``pending`` before inventory is reserved so a crash between
    reservation and order persistence leaves a record the reconciler can
    release.
    """

    __tablename__ = "order_reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    items: Mapped[List[Dict[str, Any]]] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(_in("status", RESERVATION_STATUSES), name="valid_reservation_status"),
        Index("idx_reservations_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of OrderReservation."""
        return f"<OrderReservation(id={self.id}, status={self.status}, order_id={self.order_id})>"
