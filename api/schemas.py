"""
Pydantic schemas for API request/response models.

Wire field names are camelCase; Python attributes are snake_case.
"""
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from core.inventory import ReservationStatus, StockItem


class ItemRequest(BaseModel):
    """A product and quantity in a request body."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId", min_length=1, description="Product identifier")
    quantity: int = Field(..., gt=0, description="Units requested")

    def to_stock_item(self) -> StockItem:
        return StockItem(product_id=self.product_id, quantity=self.quantity)


class InventoryItemsRequest(BaseModel):
    """Request schema for reserve/release/deduct."""

    items: List[ItemRequest] = Field(..., min_length=1, description="Items to operate on")

    model_config = {
        "json_schema_extra": {
            "examples": [{"items": [{"productId": "prod_ashwagandha", "quantity": 2}]}]
        }
    }

    def stock_items(self) -> List[StockItem]:
        return [item.to_stock_item() for item in self.items]


class ReserveResultResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    status: ReservationStatus


class ReserveResponse(BaseModel):
    """Per-item reservation outcomes; any non-RESERVED status means the caller must compensate."""

    results: List[ReserveResultResponse]


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order. Totals are computed server-side."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "items": [{"productId": "prod_ashwagandha", "quantity": 2}],
                    "addressId": "addr_123",
                }
            ]
        },
    )

    items: List[ItemRequest] = Field(..., min_length=1, description="Items to order")
    address_id: str = Field(..., alias="addressId", min_length=1, description="Shipping address id")

    def stock_items(self) -> List[StockItem]:
        return [item.to_stock_item() for item in self.items]


class PaymentIntentRequest(BaseModel):
    """Request schema for creating a payment intent."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1, description="Order to pay for")


class PaymentIntentResponse(BaseModel):
    """Provider reference the client checks out against."""

    model_config = ConfigDict(populate_by_name=True)

    provider_order_id: str = Field(..., alias="providerOrderId", description="Provider order id")
    amount: int = Field(..., description="Amount in minor currency units")
    currency: str = Field(..., description="Currency code")
