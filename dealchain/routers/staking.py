from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.db import get_db
from dealchain.core.deps import get_current_user_id, http_error
from dealchain.schemas.coupons import CouponOut
from dealchain.schemas.staking import ClaimRewardsOut, StakeIn, StakeOut, StakingTierOut
from dealchain.services import staking as svc
from dealchain.services.errors import MarketError

router = APIRouter(prefix="/staking", tags=["Staking"])


@router.get("/tiers", response_model=list[StakingTierOut])
async def list_tiers():
    return svc.list_tiers()


@router.get("/stakes", response_model=list[StakeOut])
async def my_stakes(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return await svc.list_stakes(db, owner_id=user_id, status=status, limit=limit, offset=offset)


@router.post("/stakes", response_model=StakeOut, status_code=201)
async def stake(
    body: StakeIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await svc.stake(db, coupon_id=body.coupon_id, owner_id=user_id, tier_days=body.tier_days)
    except MarketError as e:
        raise http_error(e)


@router.get("/stakes/{stake_id}", response_model=StakeOut)
async def get_stake(stake_id: int, db: AsyncSession = Depends(get_db)):
    # reads refresh the accrued balance
    try:
        return await svc.accrue(db, stake_id=stake_id)
    except MarketError as e:
        raise http_error(e)


@router.post("/stakes/{stake_id}/claim", response_model=ClaimRewardsOut)
async def claim_rewards(
    stake_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        amount = await svc.claim_rewards(db, stake_id=stake_id, actor_id=user_id)
    except MarketError as e:
        raise http_error(e)
    return ClaimRewardsOut(stake_id=stake_id, amount=amount)


@router.post("/stakes/{stake_id}/unstake", response_model=CouponOut)
async def unstake(
    stake_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await svc.unstake(db, stake_id=stake_id, actor_id=user_id)
    except MarketError as e:
        raise http_error(e)
