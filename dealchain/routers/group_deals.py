from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.db import get_db
from dealchain.core.deps import get_current_user_id, http_error
from dealchain.models.group_deal import GroupDeal
from dealchain.schemas.coupons import CouponOut
from dealchain.schemas.group_deals import ConvertAllOut, GroupDealCreateIn, GroupDealOut, GroupDealTier
from dealchain.services import group_deals as svc
from dealchain.services.errors import MarketError, NotOwner

router = APIRouter(prefix="/group-deals", tags=["Group Deals"])


def _out(deal: GroupDeal) -> GroupDealOut:
    out = GroupDealOut.model_validate(deal)
    out.active_discount = svc.active_discount(deal)
    participants = deal.current_participants if deal.frozen_participants is None else deal.frozen_participants
    tier = svc.active_tier(deal.tiers, participants)
    out.active_tier = GroupDealTier(**tier) if tier else None
    return out


@router.get("", response_model=list[GroupDealOut])
async def list_group_deals(
    promotion_id: int | None = Query(default=None),
    open_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    rows = await svc.list_group_deals(
        db, promotion_id=promotion_id, open_only=open_only, limit=limit, offset=offset
    )
    return [_out(d) for d in rows]


@router.get("/{group_deal_id}", response_model=GroupDealOut)
async def get_group_deal(group_deal_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return _out(await svc.get_group_deal(db, group_deal_id))
    except MarketError as e:
        raise http_error(e)


@router.post("", response_model=GroupDealOut, status_code=201)
async def create_group_deal(
    body: GroupDealCreateIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        deal = await svc.create_group_deal(
            db,
            promotion_id=body.promotion_id,
            merchant_id=user_id,
            tiers=[t.model_dump() for t in body.tiers],
            expires_at=body.expires_at,
            title=body.title,
            max_participants=body.max_participants,
            target_participants=body.target_participants,
        )
    except MarketError as e:
        raise http_error(e)
    return _out(deal)


@router.post("/{group_deal_id}/join", response_model=GroupDealOut)
async def join(
    group_deal_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return _out(await svc.join(db, group_deal_id=group_deal_id, user_id=user_id))
    except MarketError as e:
        raise http_error(e)


@router.post("/{group_deal_id}/leave", response_model=GroupDealOut)
async def leave(
    group_deal_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return _out(await svc.leave(db, group_deal_id=group_deal_id, user_id=user_id))
    except MarketError as e:
        raise http_error(e)


@router.post("/{group_deal_id}/finalize", response_model=GroupDealOut)
async def finalize(
    group_deal_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return _out(await svc.finalize(db, group_deal_id=group_deal_id, merchant_id=user_id))
    except MarketError as e:
        raise http_error(e)


@router.post("/{group_deal_id}/convert", response_model=CouponOut)
async def convert(
    group_deal_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await svc.convert_to_claim(db, group_deal_id=group_deal_id, user_id=user_id)
    except MarketError as e:
        raise http_error(e)


@router.post("/{group_deal_id}/convert-all", response_model=ConvertAllOut)
async def convert_all(
    group_deal_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        deal = await svc.get_group_deal(db, group_deal_id)
        if deal.merchant_id != user_id:
            raise NotOwner("Only the issuing merchant can convert every participant")
        coupons, failed = await svc.convert_all(db, group_deal_id=group_deal_id)
    except MarketError as e:
        raise http_error(e)
    return ConvertAllOut(converted=[CouponOut.model_validate(c) for c in coupons], failed=failed)
