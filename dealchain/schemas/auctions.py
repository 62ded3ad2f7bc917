from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from dealchain.schemas.coupons import CouponOut


class AuctionCreateIn(BaseModel):
    coupon_id: int
    starting_price_cents: int = Field(..., gt=0)
    reserve_price_cents: int = Field(0, ge=0)
    buy_now_price_cents: int | None = Field(default=None, gt=0)
    duration_seconds: int = Field(..., gt=0)
    extend_on_bid: bool = True
    extension_seconds: int | None = Field(default=None, ge=0)


class BidIn(BaseModel):
    amount_cents: int = Field(..., gt=0)


class AuctionOut(BaseModel):
    id: int
    coupon_id: int
    seller_id: str
    starting_price_cents: int
    reserve_price_cents: int
    buy_now_price_cents: int | None
    current_bid_cents: int
    highest_bidder_id: str | None
    bid_count: int
    starts_at: datetime
    ends_at: datetime
    extend_on_bid: bool
    extension_seconds: int
    extension_count: int
    status: str
    # live auctions inside the closing window read as ending_soon
    view_status: str | None = None
    winner_id: str | None
    final_price_cents: int | None
    settled_at: datetime | None
    settlement_ref: str | None
    bought_now: bool = False

    class Config:
        from_attributes = True


class AuctionBidOut(BaseModel):
    id: int
    auction_id: int
    bidder_id: str
    amount_cents: int
    created_at: datetime

    class Config:
        from_attributes = True


class SettlementOut(BaseModel):
    sold: bool
    # the winner's payment was refused and the coupon went back to the seller
    declined: bool = False
    auction: AuctionOut
    coupon: CouponOut
