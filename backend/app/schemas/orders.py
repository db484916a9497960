from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DiscountCodeLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str = ""
    amount: str | None = None
    type: str | None = None


class NoteAttribute(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    value: Any = None


class OrderCreatedEvent(BaseModel):
    """Subset of the platform's orders/create webhook body the engine reads."""

    model_config = ConfigDict(extra="ignore")

    id: int | str
    name: str | None = None
    order_number: int | str | None = None
    total_price: str | float | None = "0"
    currency: str | None = None
    created_at: datetime | None = None
    discount_codes: list[DiscountCodeLine] = Field(default_factory=list)
    line_items: list[dict[str, Any]] = Field(default_factory=list)
    note_attributes: list[NoteAttribute] = Field(default_factory=list)

    def note(self, key: str) -> str | None:
        for attr in self.note_attributes:
            if attr.name == key and attr.value not in (None, ""):
                return str(attr.value)
        return None


class OrderSyncResponse(BaseModel):
    success: bool
    ordersChecked: int
    attributed: int
    skipped: int


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    credited: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
