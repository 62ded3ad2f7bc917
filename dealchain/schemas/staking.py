from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class StakingTierOut(BaseModel):
    tier_days: int
    apy: float


class StakeIn(BaseModel):
    coupon_id: int
    tier_days: int = Field(..., gt=0)


class StakeOut(BaseModel):
    id: int
    coupon_id: int
    owner_id: str
    tier_days: int
    apy: float
    principal_cents: int
    staked_at: datetime
    unlocks_at: datetime
    accrued_rewards: float
    accrual_anchor_at: datetime
    last_accrued_at: datetime
    total_claimed: float
    status: str
    withdrawn_at: datetime | None

    class Config:
        from_attributes = True


class ClaimRewardsOut(BaseModel):
    stake_id: int
    amount: float
