from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import Order


class PaymentType(str, Enum):
    CARD = "card"
    YAPE = "yape"
    PAGOEFECTIVO = "pagoefectivo"
    CASH = "cash"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "PaymentType":
        """Case-insensitive; anything unrecognised is OTHER."""
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            return cls.OTHER


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)
    unit_price: Optional[Decimal] = None
    title: Optional[str] = None
    # caller's original line, kept for display
    raw: dict[str, Any] = Field(default_factory=dict)

    def as_item(self) -> dict[str, Any]:
        item = {**self.raw, "productId": self.product_id, "quantity": self.quantity}
        item.setdefault("id", self.product_id)
        return item


class OrderIntent(BaseModel):
    """Canonical purchase request consumed by reservation and persistence."""

    user_id: int = Field(gt=0)
    customer_details: dict[str, Any]
    lines: List[OrderLine] = Field(min_length=1)
    total: Decimal = Field(ge=0)
    payment_type: PaymentType
    # caller's payment string as sent, before normalization
    payment_method: Optional[str] = None

    def customer_payload(self) -> dict[str, Any]:
        details = dict(self.customer_details)
        if not details.get("paymentMethod"):
            details["paymentMethod"] = self.payment_method or self.payment_type.value
        return details

    def items_payload(self) -> list[dict[str, Any]]:
        return [line.as_item() for line in self.lines]


class OrderOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    user_id: int = Field(alias="userId")
    order_date: datetime = Field(alias="orderDate")
    customer_details: dict[str, Any] = Field(alias="customerDetails")
    items: List[dict[str, Any]]
    total: Decimal
    payment_type: str = Field(alias="paymentType")

    @classmethod
    def from_order(cls, order: Order) -> "OrderOut":
        return cls(
            id=order.id,
            user_id=order.id_user,
            order_date=order.order_date,
            customer_details=order.customer_details,
            items=order.items,
            total=order.total,
            payment_type=order.type_payment,
        )


class ErrorOut(BaseModel):
    message: str
    details: Optional[dict[str, Any]] = None
