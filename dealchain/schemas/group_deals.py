from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from dealchain.schemas.coupons import CouponOut


class GroupDealTier(BaseModel):
    participant_threshold: int = Field(..., ge=1)
    discount_percentage: float = Field(..., ge=0, le=100)


class GroupDealCreateIn(BaseModel):
    promotion_id: int
    title: str | None = None
    tiers: list[GroupDealTier] = Field(..., min_length=1)
    expires_at: datetime
    max_participants: int | None = Field(default=None, ge=1)
    target_participants: int | None = Field(default=None, ge=1)


class GroupDealOut(BaseModel):
    id: int
    promotion_id: int
    merchant_id: str
    title: str | None
    tiers: list[GroupDealTier]
    current_participants: int
    max_participants: int | None
    target_participants: int | None = None
    expires_at: datetime
    created_at: datetime
    active_discount: float = 0.0
    active_tier: GroupDealTier | None = None
    frozen_discount_percentage: float | None
    frozen_participants: int | None
    frozen_at: datetime | None
    outcome: str | None = None

    class Config:
        from_attributes = True


class ConvertAllOut(BaseModel):
    converted: list[CouponOut]
    failed: dict[str, str]
