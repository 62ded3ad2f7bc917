from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class PromotionCreateIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    category: str | None = None
    discount_percentage: float = Field(..., ge=0, le=100)
    original_price_cents: int = Field(..., gt=0)
    max_supply: int = Field(..., ge=1)
    expires_at: datetime


class PromotionOut(BaseModel):
    id: int
    merchant_id: str
    title: str
    description: str | None
    category: str | None
    discount_percentage: float
    original_price_cents: int
    max_supply: int
    current_supply: int
    remaining_supply: int
    expires_at: datetime
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True
