from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from dealchain.core.db import Base, BigIntPK


class RedemptionToken(Base):
    __tablename__ = "redemption_tokens"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    coupon_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False
    )
    issued_to: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    consumed_by: Mapped[str | None] = mapped_column(Text, nullable=True)  # merchant

    # set when the code is retired without being used
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)  # reissued, cancelled, transferred, ...

    @property
    def is_outstanding(self) -> bool:
        return not self.consumed and self.superseded_at is None

    def status_at(self, now: datetime) -> str:
        if self.consumed:
            return "consumed"
        if self.superseded_at is not None:
            return "cancelled" if self.void_reason == "cancelled" else "void"
        if self.expires_at < now:
            return "expired"
        return "pending"


Index("ix_redemption_tokens_coupon", RedemptionToken.coupon_id, RedemptionToken.consumed)
