from __future__ import annotations

from pydantic import BaseModel


class RevealResponse(BaseModel):
    discountCode: str | None = None
    button_style_type: str = "sticker"
    standard_btn_bg_color: str | None = None
    standard_btn_border_color: str | None = None
    standard_btn_text: str | None = None
    standard_btn_text_color: str | None = None
    success_btn_bg_color: str | None = None
    success_btn_border_color: str | None = None
    success_btn_text: str | None = None
    success_btn_text_color: str | None = None


class StorefrontError(BaseModel):
    error: str
    code: str
    discountCode: str | None = None


class CodeStatusResponse(BaseModel):
    codeStatus: bool


class RevealedStatusResponse(BaseModel):
    success: bool
    code: str | None = None
    status: str
