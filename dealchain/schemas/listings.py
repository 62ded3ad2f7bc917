from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ListingCreateIn(BaseModel):
    coupon_id: int
    price_cents: int = Field(..., gt=0)


class ListingPriceIn(BaseModel):
    price_cents: int = Field(..., gt=0)


class ListingOut(BaseModel):
    id: int
    coupon_id: int
    seller_id: str
    price_cents: int
    created_at: datetime
    is_active: bool
    closed_at: datetime | None
    close_reason: str | None
    buyer_id: str | None
    settlement_ref: str | None

    class Config:
        from_attributes = True
