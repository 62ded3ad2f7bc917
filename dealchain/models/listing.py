from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from dealchain.core.db import Base, BigIntPK


class Listing(Base):
    __tablename__ = "listings"
    __table_args__ = (CheckConstraint("price_cents > 0", name="listings_price_positive_chk"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    coupon_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    seller_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    close_reason: Mapped[str | None] = mapped_column(Text, nullable=True)  # sold_pending, sold, cancelled, expired, payment_failed
    buyer_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    settlement_ref: Mapped[str | None] = mapped_column(Text, nullable=True)


# one active listing per coupon
Index(
    "uq_listings_active_coupon",
    Listing.coupon_id,
    unique=True,
    postgresql_where=Listing.is_active.is_(True),
    sqlite_where=Listing.is_active.is_(True),
)
