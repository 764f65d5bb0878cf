"""Catalog-owned rows the order core reads and adjusts.

Listings are created and edited by the catalog service; the core only moves
`available_quantity`, `total_orders` and `rating`.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from gasmarket.common.db import Base
from gasmarket.common.timeutils import utcnow


class Listing(Base):
    """One agent's sellable gas cylinder offering."""

    __tablename__ = "agent_gas_listings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    agent_id: Mapped[str] = mapped_column(String, index=True)
    brand_name: Mapped[str] = mapped_column(String(100))
    size: Mapped[str] = mapped_column(String(50))
    cylinder_condition: Mapped[str] = mapped_column(String(20), default="refilled")
    selling_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    delivery_available: Mapped[bool] = mapped_column(Boolean, default=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    available_quantity: Mapped[int] = mapped_column(Integer, default=0)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    rating: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=Decimal("0"))
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class CartItem(Base):
    """A customer's pending intent to buy from a listing."""

    __tablename__ = "carts"
    __table_args__ = (UniqueConstraint("customer_id", "listing_id", name="uq_cart_customer_listing"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    customer_id: Mapped[str] = mapped_column(String, index=True)
    listing_id: Mapped[str] = mapped_column(ForeignKey("agent_gas_listings.id", ondelete="CASCADE"))
    agent_id: Mapped[str] = mapped_column(String, index=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
