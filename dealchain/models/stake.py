from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from dealchain.core.db import Base, BigIntPK


class StakeStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    WITHDRAWN = "withdrawn"


class StakePosition(Base):
    __tablename__ = "stake_positions"
    __table_args__ = (
        CheckConstraint("status IN ('locked','unlocked','withdrawn')", name="stake_positions_status_check"),
        CheckConstraint("tier_days > 0", name="stake_positions_tier_days_chk"),
        CheckConstraint("accrued_rewards >= 0", name="stake_positions_rewards_chk"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    coupon_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    tier_days: Mapped[int] = mapped_column(Integer, nullable=False)
    apy: Mapped[float] = mapped_column(Float, nullable=False)
    principal_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    staked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    unlocks_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    accrued_rewards: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # accrual restarts here after every claim
    accrual_anchor_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_accrued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    total_claimed: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    status: Mapped[str] = mapped_column(Text, nullable=False, default=StakeStatus.LOCKED.value)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
