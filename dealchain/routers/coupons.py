from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.db import get_db
from dealchain.core.deps import get_current_user_id, http_error
from dealchain.schemas.coupons import ClaimIn, CouponEventOut, CouponOut, CouponTransferOut, GiftIn
from dealchain.services import ledger
from dealchain.services.errors import MarketError
from dealchain.services.events import list_coupon_events

router = APIRouter(prefix="/coupons", tags=["Coupons"])


@router.post("/claim", response_model=CouponOut, status_code=201)
async def claim_coupon(
    body: ClaimIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await ledger.claim(db, promotion_id=body.promotion_id, user_id=user_id)
    except MarketError as e:
        raise http_error(e)


@router.get("", response_model=list[CouponOut])
async def my_coupons(
    state: str | None = Query(default=None),
    promotion_id: int | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return await ledger.list_coupons(
        db, owner_id=user_id, state=state, promotion_id=promotion_id, limit=limit, offset=offset
    )


@router.get("/{coupon_id}", response_model=CouponOut)
async def get_coupon(coupon_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await ledger.get_coupon(db, coupon_id)
    except MarketError as e:
        raise http_error(e)


@router.get("/{coupon_id}/history", response_model=list[CouponTransferOut])
async def coupon_history(coupon_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await ledger.get_transfer_history(db, coupon_id=coupon_id)
    except MarketError as e:
        raise http_error(e)


@router.get("/{coupon_id}/events", response_model=list[CouponEventOut])
async def coupon_events(coupon_id: int, db: AsyncSession = Depends(get_db)):
    return await list_coupon_events(db, coupon_id=coupon_id)


@router.post("/{coupon_id}/gift", response_model=CouponOut)
async def gift_coupon(
    coupon_id: int,
    body: GiftIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await ledger.gift(db, coupon_id=coupon_id, from_id=user_id, to_id=body.to_id)
    except MarketError as e:
        raise http_error(e)
