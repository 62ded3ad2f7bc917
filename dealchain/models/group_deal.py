from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dealchain.core.db import Base, BigIntPK, JSONType


class GroupDeal(Base):
    __tablename__ = "group_deals"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    promotion_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("promotions.id"), nullable=False, index=True
    )
    merchant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)

    # [{"participant_threshold": 5, "discount_percentage": 10.0}, ...] ascending
    tiers: Mapped[list] = mapped_column(JSONType, nullable=False)

    current_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # deal succeeds when this many joined by expiry; unset means any turnout counts
    target_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # discount frozen at first conversion after expiry
    frozen_discount_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    frozen_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    frozen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    outcome: Mapped[str | None] = mapped_column(Text, nullable=True)  # successful, failed


class GroupDealParticipant(Base):
    __tablename__ = "group_deal_participants"
    __table_args__ = (
        UniqueConstraint("group_deal_id", "user_id", name="uq_group_deal_participant"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    group_deal_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("group_deals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    coupon_id: Mapped[int | None] = mapped_column(BigIntPK, ForeignKey("coupons.id"), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
