# dealchain/models/coupon.py
from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from dealchain.core.db import Base, BigIntPK


class CouponState(str, Enum):
    ACTIVE = "active"
    LISTED = "listed"
    STAKED = "staked"
    IN_AUCTION = "in_auction"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({CouponState.REDEEMED, CouponState.EXPIRED})


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint(
            "state IN ('active','listed','staked','in_auction','redeemed','expired')",
            name="coupons_state_check",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    promotion_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("promotions.id"), nullable=False, index=True
    )
    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    state: Mapped[str] = mapped_column(Text, nullable=False, default=CouponState.ACTIVE.value, index=True)

    # discount snapshot at claim time (group deals may claim at a tier discount)
    discount_percentage: Mapped[float] = mapped_column(Numeric(5, 2, asdecimal=False), nullable=False)

    # optimistic concurrency: every write is a CAS on (id, version, state)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())

    promotion = relationship("Promotion", lazy="selectin")

    @property
    def coupon_state(self) -> CouponState:
        return CouponState(self.state)


class CouponTransfer(Base):
    """Append-only ownership history."""

    __tablename__ = "coupon_transfers"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    coupon_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )

    from_id: Mapped[str | None] = mapped_column(Text, nullable=True)  # None on claim
    to_id: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)  # claim, sale, auction, gift
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)  # settlement receipt

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
