from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from dealchain.core.db import Base, BigIntPK


class AuctionStatus(str, Enum):
    LIVE = "live"
    SETTLING = "settling"  # winner fixed, payment in flight
    ENDING_SOON = "ending_soon"  # derived view, never persisted
    ENDED = "ended"
    SETTLED = "settled"
    CANCELLED = "cancelled"


CLOSED_STATUSES = frozenset({AuctionStatus.ENDED, AuctionStatus.SETTLED, AuctionStatus.CANCELLED})


class Auction(Base):
    __tablename__ = "auctions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('live','settling','ended','settled','cancelled')",
            name="auctions_status_check",
        ),
        CheckConstraint("starting_price_cents > 0", name="auctions_starting_price_chk"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    coupon_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    seller_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    starting_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    reserve_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    buy_now_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    current_bid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    highest_bidder_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    bid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    starts_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    extend_on_bid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    extension_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    extension_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(Text, nullable=False, default=AuctionStatus.LIVE.value, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # settlement outcome
    winner_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    settlement_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    bought_now: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AuctionBid(Base):
    """Append-only accepted bids."""

    __tablename__ = "auction_bids"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    auction_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False
    )
    bidder_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


Index("ix_auction_bids_auction_amount", AuctionBid.auction_id, AuctionBid.amount_cents.desc())
