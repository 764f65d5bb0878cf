"""Payment verification records.

Rows are never deleted; a restarted payment is a new row and the old one stays
as audit trail.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from gasmarket.common.db import Base, JSONType
from gasmarket.common.timeutils import utcnow


class Payment(Base):
    """One verification-code attempt to settle an order's grand total."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    customer_id: Mapped[str] = mapped_column(String, index=True)
    agent_id: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    phone_number: Mapped[str] = mapped_column(String(20))
    payment_method: Mapped[str] = mapped_column(String(16), default="mpesa")
    verification_code: Mapped[str] = mapped_column(String(6))
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    transaction_type: Mapped[str] = mapped_column(String(16), default="checkout")
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True, index=True)
    transaction_reference: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    mpesa_receipt_number: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True)
    verification_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
