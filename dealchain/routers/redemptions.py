from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import utcnow
from dealchain.core.db import get_db
from dealchain.core.deps import get_current_user_id, http_error
from dealchain.schemas.coupons import CouponOut
from dealchain.schemas.redemptions import FinalizeIn, IssueTokenIn, RedemptionTicketOut, RedemptionTokenOut
from dealchain.services import redemption
from dealchain.services.errors import MarketError

router = APIRouter(prefix="/redemptions", tags=["Redemptions"])


def _token_out(issued: redemption.IssuedToken) -> RedemptionTokenOut:
    t = issued.token
    return RedemptionTokenOut(
        code=t.code,
        coupon_id=t.coupon_id,
        issued_at=t.issued_at,
        expires_at=t.expires_at,
        qr_payload=issued.qr_payload,
    )


def _ticket_out(token, now) -> RedemptionTicketOut:
    return RedemptionTicketOut(
        id=token.id,
        coupon_id=token.coupon_id,
        issued_to=token.issued_to,
        issued_at=token.issued_at,
        expires_at=token.expires_at,
        status=token.status_at(now),
        consumed_at=token.consumed_at,
        consumed_by=token.consumed_by,
    )


@router.post("/coupons/{coupon_id}/token", response_model=RedemptionTokenOut, status_code=201)
async def issue_token(
    coupon_id: int,
    body: IssueTokenIn | None = None,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        issued = await redemption.issue_token(
            db,
            coupon_id=coupon_id,
            actor_id=user_id,
            window_seconds=body.window_seconds if body else None,
        )
    except MarketError as e:
        raise http_error(e)
    return _token_out(issued)


@router.post("/coupons/{coupon_id}/token/refresh", response_model=RedemptionTokenOut)
async def refresh_token(
    coupon_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        issued = await redemption.refresh_token(db, coupon_id=coupon_id, actor_id=user_id)
    except MarketError as e:
        raise http_error(e)
    return _token_out(issued)


@router.post("/finalize", response_model=CouponOut)
async def finalize(
    body: FinalizeIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    # the scanning merchant is the caller
    try:
        return await redemption.finalize(db, code=body.code, merchant_id=user_id)
    except MarketError as e:
        raise http_error(e)


@router.delete("/coupons/{coupon_id}/token", response_model=RedemptionTicketOut)
async def cancel_token(
    coupon_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        token = await redemption.cancel_token(db, coupon_id=coupon_id, actor_id=user_id)
    except MarketError as e:
        raise http_error(e)
    return _ticket_out(token, utcnow())


@router.get("/mine", response_model=list[RedemptionTicketOut])
async def my_tickets(
    status: str | None = Query(default=None, pattern="^(pending|consumed|cancelled)$"),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    now = utcnow()
    tokens = await redemption.list_owner_tokens(db, owner_id=user_id, status=status, now=now)
    return [_ticket_out(t, now) for t in tokens]


@router.get("/merchant", response_model=list[RedemptionTicketOut])
async def merchant_tickets(
    status: str | None = Query(default=None, pattern="^(pending|consumed|cancelled)$"),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    # the caller is the merchant
    now = utcnow()
    tokens = await redemption.list_merchant_tokens(db, merchant_id=user_id, status=status, now=now)
    return [_ticket_out(t, now) for t in tokens]
