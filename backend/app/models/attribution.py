import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Enum, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AttributionSource(str, enum.Enum):
    webhook = "webhook"
    sync = "sync"


class OrderAttribution(Base):
    """One credited order; the (order_id, merchant_id) pair is the redemption dedup key."""

    __tablename__ = "order_attributions"
    __table_args__ = (UniqueConstraint("order_id", "merchant_id", name="uq_order_attributions_order_merchant"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    merchant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source: Mapped[AttributionSource] = mapped_column(
        Enum(AttributionSource, native_enum=False),
        nullable=False,
        default=AttributionSource.webhook,
    )
    correlation_value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    line_items_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    credited_codes: Mapped[list | None] = mapped_column(JSON, nullable=True)
    skipped_codes: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # Codes whose credit hit a store error; redelivery will not retry them.
    failed_codes: Mapped[list | None] = mapped_column(JSON, nullable=True)
    order_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    credited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
