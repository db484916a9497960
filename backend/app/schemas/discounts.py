from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.discounts import (
    BatchKind,
    BatchSyncStatus,
    DiscountValueType,
    MinimumRequirement,
    TargetSelection,
)


# Columns an update may leave out but never clear.
REQUIRED_ON_UPDATE = (
    "title",
    "discount_type",
    "discount_value",
    "target_selection",
    "minimum_requirement",
    "customer_selection",
    "button_style_type",
)


def _utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def shape_error(fields: Mapping[str, Any]) -> str | None:
    """Return the first rule a set's combined fields break, or None."""
    discount_value = fields.get("discount_value")
    if fields.get("discount_type") == DiscountValueType.percentage and discount_value is not None:
        if Decimal(str(discount_value)) > 100:
            return "percentage discounts cannot exceed 100"
    if "code_length" in fields and fields.get("code_length") == 0 and not fields.get("prefix_code"):
        return "codes need a prefix or a random suffix"
    target = fields.get("target_selection")
    if target == TargetSelection.collections and not fields.get("entitled_collection_ids"):
        return "entitled_collection_ids is required for collection targeting"
    if target == TargetSelection.products and not fields.get("entitled_product_ids"):
        return "entitled_product_ids is required for product targeting"
    minimum = fields.get("minimum_requirement")
    if minimum == MinimumRequirement.subtotal and fields.get("minimum_subtotal") is None:
        return "minimum_subtotal is required"
    if minimum == MinimumRequirement.quantity and fields.get("minimum_quantity") is None:
        return "minimum_quantity is required"
    starts_at = _utc(fields.get("starts_at"))
    ends_at = _utc(fields.get("ends_at"))
    if starts_at and ends_at and ends_at <= starts_at:
        return "ends_at must be after starts_at"
    return None


class PresentationFields(BaseModel):
    button_style_type: str = Field(default="sticker", max_length=40)
    standard_btn_bg_color: str | None = Field(default=None, max_length=40)
    standard_btn_border_color: str | None = Field(default=None, max_length=40)
    standard_btn_text: str | None = Field(default=None, max_length=255)
    standard_btn_text_color: str | None = Field(default=None, max_length=40)
    success_btn_bg_color: str | None = Field(default=None, max_length=40)
    success_btn_border_color: str | None = Field(default=None, max_length=40)
    success_btn_text: str | None = Field(default=None, max_length=255)
    success_btn_text_color: str | None = Field(default=None, max_length=40)


class DiscountSetCreate(PresentationFields):
    title: str = Field(min_length=1, max_length=255)
    prefix_code: str = Field(default="", max_length=40)
    code_length: int = Field(default=8, ge=0, le=40)
    quantity: int = Field(ge=1, le=10000)
    discount_type: DiscountValueType = DiscountValueType.percentage
    discount_value: Decimal = Field(gt=0)
    target_selection: TargetSelection = TargetSelection.all
    entitled_collection_ids: list[str] = Field(default_factory=list)
    entitled_product_ids: list[str] = Field(default_factory=list)
    minimum_requirement: MinimumRequirement = MinimumRequirement.none
    minimum_subtotal: Decimal | None = Field(default=None, ge=0)
    minimum_quantity: int | None = Field(default=None, ge=1)
    allocation_limit: int | None = Field(default=None, ge=1)
    customer_selection: str = Field(default="all", max_length=40)
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "DiscountSetCreate":
        problem = shape_error(self.model_dump())
        if problem:
            raise ValueError(problem)
        return self


class DiscountSetUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    discount_type: DiscountValueType | None = None
    discount_value: Decimal | None = Field(default=None, gt=0)
    target_selection: TargetSelection | None = None
    entitled_collection_ids: list[str] | None = None
    entitled_product_ids: list[str] | None = None
    minimum_requirement: MinimumRequirement | None = None
    minimum_subtotal: Decimal | None = Field(default=None, ge=0)
    minimum_quantity: int | None = Field(default=None, ge=1)
    allocation_limit: int | None = Field(default=None, ge=1)
    customer_selection: str | None = Field(default=None, max_length=40)
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    button_style_type: str | None = Field(default=None, max_length=40)
    standard_btn_bg_color: str | None = Field(default=None, max_length=40)
    standard_btn_border_color: str | None = Field(default=None, max_length=40)
    standard_btn_text: str | None = Field(default=None, max_length=255)
    standard_btn_text_color: str | None = Field(default=None, max_length=40)
    success_btn_bg_color: str | None = Field(default=None, max_length=40)
    success_btn_border_color: str | None = Field(default=None, max_length=40)
    success_btn_text: str | None = Field(default=None, max_length=255)
    success_btn_text_color: str | None = Field(default=None, max_length=40)

    @model_validator(mode="after")
    def _reject_cleared_required(self) -> "DiscountSetUpdate":
        cleared = [name for name in REQUIRED_ON_UPDATE if name in self.model_fields_set and getattr(self, name) is None]
        if cleared:
            raise ValueError(f"{', '.join(cleared)} cannot be null")
        return self


class ActivateRequest(BaseModel):
    ends_at: datetime | None = None


class CodeBatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: BatchKind
    requested_count: int
    created_count: int
    sync_status: BatchSyncStatus
    sync_attempts: int
    last_error: str | None = None
    created_at: datetime
    synced_at: datetime | None = None


class DiscountSetRead(PresentationFields):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    merchant_id: str
    title: str
    prefix_code: str
    code_length: int
    quantity: int
    discount_type: DiscountValueType
    discount_value: Decimal
    target_selection: TargetSelection
    entitled_collection_ids: list[str] | None = None
    entitled_product_ids: list[str] | None = None
    minimum_requirement: MinimumRequirement
    minimum_subtotal: Decimal | None = None
    minimum_quantity: int | None = None
    allocation_limit: int | None = None
    customer_selection: str
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_active: bool
    promotion_rule_id: str | None = None
    usage_count: int
    revenue: Decimal
    created_at: datetime
    updated_at: datetime


class DiscountSetDetail(DiscountSetRead):
    codes_total: int = 0
    codes_revealed: int = 0
    codes_used: int = 0
    batches: list[CodeBatchRead] = Field(default_factory=list)


class DiscountCodeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    batch_id: UUID
    revealed: bool
    revealed_at: datetime | None = None
    use_count: int
    usable_qty: int
    revenue: Decimal
    created_at: datetime


class BatchOutcome(BaseModel):
    batch: CodeBatchRead
    created: int
    failures: list[str] = Field(default_factory=list)
