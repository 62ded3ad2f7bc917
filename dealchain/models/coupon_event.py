# dealchain/models/coupon_event.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from dealchain.core.db import Base, BigIntPK, JSONType


class CouponEvent(Base):
    """Lifecycle event log; doubles as the outbox for the reward ledger."""

    __tablename__ = "coupon_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    coupon_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )

    actor_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    event_type: Mapped[str] = mapped_column(Text, nullable=False)  # e.g. claimed, redeemed, sold
    meta: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


Index("ix_coupon_events_pending", CouponEvent.delivered_at, CouponEvent.id)
