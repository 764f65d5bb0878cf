"""API request schemas for order endpoints.

Patch-style payloads forbid unknown fields so callers can only touch the
columns each operation allows.
"""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PaymentMethod = Literal["cash", "cash_on_delivery", "mpesa", "card", "wallet"]


class PlaceOrderRequest(BaseModel):
    """Order placement payload from a customer."""

    listing_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    delivery_address: str = Field(min_length=1)
    delivery_latitude: Decimal | None = None
    delivery_longitude: Decimal | None = None
    delivery_notes: str = ""
    payment_method: PaymentMethod = "cash"


class OrderStatusPatch(BaseModel):
    """Fields an agent may change while driving an order forward."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(min_length=1)
    agent_notes: str | None = None
    estimated_delivery_time: int | None = Field(default=None, ge=0)


class CancelOrderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cancellation_reason: str | None = None


class RatingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rating: int
    review: str | None = None
