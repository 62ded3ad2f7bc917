from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class IssueTokenIn(BaseModel):
    window_seconds: int | None = Field(default=None, ge=5, le=600)


class RedemptionTokenOut(BaseModel):
    code: str
    coupon_id: int
    issued_at: datetime
    expires_at: datetime
    qr_payload: str


class FinalizeIn(BaseModel):
    code: str = Field(..., min_length=1)


class RedemptionTicketOut(BaseModel):
    id: int
    coupon_id: int
    issued_to: str
    issued_at: datetime
    expires_at: datetime
    status: str
    consumed_at: datetime | None = None
    consumed_by: str | None = None
