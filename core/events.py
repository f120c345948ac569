"""
Domain events emitted by the order saga.

Events travel over the event log as flat string maps with camelCase keys,
one stream per topic.
"""
from enum import Enum
from typing import ClassVar, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError


class Topic(str, Enum):
    ORDER = "order"
    PAYMENT = "payment"


class EventType(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


class MalformedEventError(ValueError):
    """Raised when a log entry cannot be decoded into a domain event."""

    pass


class _DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)
    request_id: str = Field(..., alias="requestId")

    topic: ClassVar[Topic] = Topic.ORDER

    def to_fields(self) -> Dict[str, str]:
        """Flatten to the wire format, dropping unset optional fields."""
        fields = self.model_dump(by_alias=True, exclude_none=True)
        return {key: str(value) for key, value in fields.items()}


class OrderCreated(_DomainEvent):
    type: Literal["ORDER_CREATED"] = "ORDER_CREATED"
    total_amount: str = Field(..., alias="totalAmount")


class PaymentCaptured(_DomainEvent):
    type: Literal["PAYMENT_CAPTURED"] = "PAYMENT_CAPTURED"
    topic: ClassVar[Topic] = Topic.PAYMENT
    payment_id: str = Field(..., alias="paymentId")
    amount: str


class PaymentFailed(_DomainEvent):
    type: Literal["PAYMENT_FAILED"] = "PAYMENT_FAILED"
    topic: ClassVar[Topic] = Topic.PAYMENT
    payment_id: Optional[str] = Field(default=None, alias="paymentId")


DomainEvent = Union[OrderCreated, PaymentCaptured, PaymentFailed]

EVENT_TYPES: Dict[str, type] = {
    EventType.ORDER_CREATED.value: OrderCreated,
    EventType.PAYMENT_CAPTURED.value: PaymentCaptured,
    EventType.PAYMENT_FAILED.value: PaymentFailed,
}


def decode_event(fields: Dict[str, str]) -> DomainEvent:
    """
    Rebuild a domain event from its wire fields.

    Raises:
        MalformedEventError: For unknown types or missing fields
    """
    event_cls = EVENT_TYPES.get(fields.get("type", ""))
    if event_cls is None:
        raise MalformedEventError(f"Unknown event type: {fields.get('type')!r}")
    try:
        return event_cls.model_validate(fields)
    except PydanticValidationError as e:
        raise MalformedEventError(str(e)) from e
