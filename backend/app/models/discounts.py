import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class DiscountValueType(str, enum.Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"


class TargetSelection(str, enum.Enum):
    all = "all"
    collections = "collections"
    products = "products"


class MinimumRequirement(str, enum.Enum):
    none = "none"
    subtotal = "subtotal"
    quantity = "quantity"


class BatchKind(str, enum.Enum):
    initial = "initial"
    supplemental = "supplemental"


class BatchSyncStatus(str, enum.Enum):
    pending_sync = "pending_sync"
    synced = "synced"
    sync_failed = "sync_failed"


class DiscountSet(Base):
    __tablename__ = "discount_sets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    prefix_code: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    code_length: Mapped[int] = mapped_column(Integer, nullable=False, default=8)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    discount_type: Mapped[DiscountValueType] = mapped_column(
        Enum(DiscountValueType, native_enum=False),
        nullable=False,
        default=DiscountValueType.percentage,
    )
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    target_selection: Mapped[TargetSelection] = mapped_column(
        Enum(TargetSelection, native_enum=False),
        nullable=False,
        default=TargetSelection.all,
    )
    entitled_collection_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    entitled_product_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    minimum_requirement: Mapped[MinimumRequirement] = mapped_column(
        Enum(MinimumRequirement, native_enum=False),
        nullable=False,
        default=MinimumRequirement.none,
    )
    minimum_subtotal: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    minimum_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allocation_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_selection: Mapped[str] = mapped_column(String(40), nullable=False, default="all")

    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    promotion_rule_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    replenish_epoch: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    button_style_type: Mapped[str] = mapped_column(String(40), nullable=False, default="sticker")
    standard_btn_bg_color: Mapped[str | None] = mapped_column(String(40), nullable=True)
    standard_btn_border_color: Mapped[str | None] = mapped_column(String(40), nullable=True)
    standard_btn_text: Mapped[str | None] = mapped_column(String(255), nullable=True)
    standard_btn_text_color: Mapped[str | None] = mapped_column(String(40), nullable=True)
    success_btn_bg_color: Mapped[str | None] = mapped_column(String(40), nullable=True)
    success_btn_border_color: Mapped[str | None] = mapped_column(String(40), nullable=True)
    success_btn_text: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success_btn_text_color: Mapped[str | None] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    batches: Mapped[list["CodeBatch"]] = relationship(
        "CodeBatch", back_populates="discount_set", lazy="selectin", order_by="CodeBatch.created_at"
    )


class CodeBatch(Base):
    __tablename__ = "code_batches"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    set_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("discount_sets.id"), nullable=False, index=True
    )
    kind: Mapped[BatchKind] = mapped_column(Enum(BatchKind, native_enum=False), nullable=False, default=BatchKind.initial)
    requested_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    sync_status: Mapped[BatchSyncStatus] = mapped_column(
        Enum(BatchSyncStatus, native_enum=False),
        nullable=False,
        default=BatchSyncStatus.pending_sync,
        index=True,
    )
    sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    discount_set: Mapped[DiscountSet] = relationship("DiscountSet", back_populates="batches")


class DiscountCode(Base):
    __tablename__ = "discount_codes"
    __table_args__ = (UniqueConstraint("merchant_id", "code", name="uq_discount_codes_merchant_code"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    set_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("discount_sets.id"), nullable=False, index=True
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("code_batches.id"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    revealed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    revealed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    usable_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
