"""Request/response models for the invoices API."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class PartyRefIn(BaseModel):
    kind: Literal["self", "contact"]
    contact_id: str | None = None

    @model_validator(mode="after")
    def _contact_needs_id(self) -> "PartyRefIn":
        if self.kind == "contact" and not self.contact_id:
            raise ValueError("contact_id is required for kind 'contact'")
        return self


class LineItemIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    vat_rate: Decimal | None = Field(None, ge=0, le=100)
    unit: str = "piece"
    product_id: str | None = None


class DraftIn(BaseModel):
    seller: PartyRefIn | None = None
    buyer: PartyRefIn | None = None
    line_items: list[LineItemIn] | None = None
    invoice_date: date | None = None
    due_date: date | None = None
    service_date: date | None = None
    language: str | None = Field(None, max_length=8)
    currency: str | None = Field(None, min_length=3, max_length=3)
    intro_text: str | None = None
    outro_text: str | None = None
    buyer_reference: str | None = None
    recipient_email: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Only fields the caller actually sent; ``None`` language/currency are dropped."""
        payload = self.model_dump(exclude_unset=True)
        for key in ("language", "currency"):
            if payload.get(key) is None:
                payload.pop(key, None)
        return payload


class StatusIn(BaseModel):
    status: str


class DocumentLinkOut(BaseModel):
    invoice_id: str
    invoice_number: str
    url: str
    expires_in: int
