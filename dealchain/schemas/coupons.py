from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CouponOut(BaseModel):
    id: int
    promotion_id: int
    owner_id: str
    state: str
    discount_percentage: float
    version: int
    claimed_at: datetime
    redeemed_at: datetime | None
    expired_at: datetime | None
    updated_at: datetime

    class Config:
        from_attributes = True


class ClaimIn(BaseModel):
    promotion_id: int


class GiftIn(BaseModel):
    to_id: str = Field(..., min_length=1)


class CouponTransferOut(BaseModel):
    id: int
    coupon_id: int
    from_id: str | None
    to_id: str
    reason: str
    reference: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class CouponEventOut(BaseModel):
    id: int
    coupon_id: int
    actor_id: str | None
    event_type: str
    meta: dict[str, Any]
    created_at: datetime
    delivered_at: datetime | None

    class Config:
        from_attributes = True
