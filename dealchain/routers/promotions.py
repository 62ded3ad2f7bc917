from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.db import get_db
from dealchain.core.deps import get_current_user_id, http_error
from dealchain.schemas.promotions import PromotionCreateIn, PromotionOut
from dealchain.services import promotions as svc
from dealchain.services.errors import MarketError

router = APIRouter(prefix="/promotions", tags=["Promotions"])


@router.get("", response_model=list[PromotionOut])
async def list_promotions(
    merchant_id: str | None = Query(default=None),
    active_only: bool = Query(default=True),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await svc.list_promotions(
        db, merchant_id=merchant_id, active_only=active_only, limit=limit, offset=offset
    )


@router.get("/{promotion_id}", response_model=PromotionOut)
async def get_promotion(promotion_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await svc.get_promotion(db, promotion_id)
    except MarketError as e:
        raise http_error(e)


@router.post("", response_model=PromotionOut, status_code=201)
async def create_promotion(
    body: PromotionCreateIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await svc.create_promotion(db, merchant_id=user_id, **body.model_dump())
    except MarketError as e:
        raise http_error(e)


@router.post("/{promotion_id}/deactivate", response_model=PromotionOut)
async def deactivate_promotion(
    promotion_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        return await svc.deactivate_promotion(db, promotion_id=promotion_id, merchant_id=user_id)
    except MarketError as e:
        raise http_error(e)
