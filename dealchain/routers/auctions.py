from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.db import get_db
from dealchain.core.deps import get_current_user_id, get_settlement_gateway, http_error
from dealchain.integrations.settlement_client import SettlementGateway
from dealchain.models.auction import Auction
from dealchain.schemas.auctions import AuctionBidOut, AuctionCreateIn, AuctionOut, BidIn, SettlementOut
from dealchain.schemas.coupons import CouponOut
from dealchain.services import auctions as svc
from dealchain.services.errors import MarketError

router = APIRouter(prefix="/auctions", tags=["Auctions"])


def _out(auction: Auction) -> AuctionOut:
    out = AuctionOut.model_validate(auction)
    out.view_status = svc.view_status(auction).value
    return out


@router.get("", response_model=list[AuctionOut])
async def list_auctions(
    status: str | None = Query(default=None),
    seller_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    rows = await svc.list_auctions(db, status=status, seller_id=seller_id, limit=limit, offset=offset)
    return [_out(a) for a in rows]


@router.get("/{auction_id}", response_model=AuctionOut)
async def get_auction(auction_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return _out(await svc.get_auction(db, auction_id))
    except MarketError as e:
        raise http_error(e)


@router.get("/{auction_id}/bids", response_model=list[AuctionBidOut])
async def list_bids(auction_id: int, db: AsyncSession = Depends(get_db)):
    return await svc.list_bids(db, auction_id=auction_id)


@router.post("", response_model=AuctionOut, status_code=201)
async def create_auction(
    body: AuctionCreateIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        auction = await svc.create_auction(db, seller_id=user_id, **body.model_dump())
    except MarketError as e:
        raise http_error(e)
    return _out(auction)


@router.post("/{auction_id}/bids", response_model=AuctionOut)
async def place_bid(
    auction_id: int,
    body: BidIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        auction = await svc.place_bid(
            db, auction_id=auction_id, bidder_id=user_id, amount_cents=body.amount_cents
        )
    except MarketError as e:
        raise http_error(e)
    return _out(auction)


@router.post("/{auction_id}/buy-now", response_model=CouponOut)
async def buy_now(
    auction_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    settlement: SettlementGateway = Depends(get_settlement_gateway),
):
    try:
        return await svc.buy_now(db, auction_id=auction_id, buyer_id=user_id, settlement=settlement)
    except MarketError as e:
        raise http_error(e)


@router.post("/{auction_id}/settle", response_model=SettlementOut)
async def settle(
    auction_id: int,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(get_current_user_id),
    settlement: SettlementGateway = Depends(get_settlement_gateway),
):
    # anyone may trigger settlement once the auction has ended
    try:
        result = await svc.settle(db, auction_id=auction_id, settlement=settlement)
    except MarketError as e:
        raise http_error(e)
    return SettlementOut(
        sold=result.sold,
        declined=result.declined,
        auction=_out(result.auction),
        coupon=CouponOut.model_validate(result.coupon),
    )


@router.post("/{auction_id}/cancel", response_model=AuctionOut)
async def cancel_auction(
    auction_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        auction = await svc.cancel_auction(db, auction_id=auction_id, actor_id=user_id)
    except MarketError as e:
        raise http_error(e)
    return _out(auction)
