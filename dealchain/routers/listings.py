from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.db import get_db
from dealchain.core.deps import get_current_user_id, get_settlement_gateway, http_error
from dealchain.integrations.settlement_client import SettlementGateway
from dealchain.schemas.coupons import CouponOut
from dealchain.schemas.listings import ListingCreateIn, ListingOut, ListingPriceIn
from dealchain.services import listings as svc
from dealchain.services.errors import MarketError

router = APIRouter(prefix="/listings", tags=["Marketplace"])


@router.get("", response_model=list[ListingOut])
async def list_listings(
    seller_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await svc.list_active_listings(db, seller_id=seller_id, limit=limit, offset=offset)


@router.get("/{listing_id}", response_model=ListingOut)
async def get_listing(listing_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await svc.get_listing(db, listing_id)
    except MarketError as e:
        raise http_error(e)


@router.post("", response_model=ListingOut, status_code=201)
async def create_listing(
    body: ListingCreateIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await svc.create_listing(
            db, coupon_id=body.coupon_id, seller_id=user_id, price_cents=body.price_cents
        )
    except MarketError as e:
        raise http_error(e)


@router.patch("/{listing_id}", response_model=ListingOut)
async def update_price(
    listing_id: int,
    body: ListingPriceIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await svc.update_listing_price(
            db, listing_id=listing_id, actor_id=user_id, price_cents=body.price_cents
        )
    except MarketError as e:
        raise http_error(e)


@router.delete("/{listing_id}", response_model=ListingOut)
async def cancel_listing(
    listing_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await svc.cancel_listing(db, listing_id=listing_id, actor_id=user_id)
    except MarketError as e:
        raise http_error(e)


@router.post("/{listing_id}/buy", response_model=CouponOut)
async def buy_listing(
    listing_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    settlement: SettlementGateway = Depends(get_settlement_gateway),
):
    try:
        return await svc.buy(db, listing_id=listing_id, buyer_id=user_id, settlement=settlement)
    except MarketError as e:
        raise http_error(e)
