from __future__ import annotations

from datetime import datetime

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import as_naive_utc, resolve_now
from dealchain.models.promotion import Promotion
from dealchain.services.errors import (
    InvalidAmount,
    InvalidPrice,
    NotFound,
    NotOwner,
    PromotionExpired,
    PromotionInactive,
    SupplyExhausted,
)


def is_expired(promotion: Promotion, now: datetime) -> bool:
    return promotion.expires_at <= now


async def get_promotion(db: AsyncSession, promotion_id: int) -> Promotion:
    promotion = await db.get(Promotion, promotion_id)
    if not promotion:
        raise NotFound("Promotion not found")
    return promotion


async def list_promotions(
    db: AsyncSession,
    *,
    merchant_id: str | None = None,
    active_only: bool = True,
    now: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Promotion]:
    now = resolve_now(now)
    q = select(Promotion)

    if merchant_id:
        q = q.where(Promotion.merchant_id == merchant_id)
    if active_only:
        q = q.where(Promotion.is_active.is_(True), Promotion.expires_at > now)

    q = q.order_by(Promotion.created_at.desc(), Promotion.id.desc()).offset(offset).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def create_promotion(
    db: AsyncSession,
    *,
    merchant_id: str,
    title: str,
    discount_percentage: float,
    original_price_cents: int,
    max_supply: int,
    expires_at: datetime,
    description: str | None = None,
    category: str | None = None,
    now: datetime | None = None,
) -> Promotion:
    now = resolve_now(now)
    expires_at = as_naive_utc(expires_at)

    if not 0 <= discount_percentage <= 100:
        raise InvalidAmount("discount_percentage must be between 0 and 100")
    if original_price_cents <= 0:
        raise InvalidPrice("original_price_cents must be positive")
    if max_supply < 1:
        raise InvalidAmount("max_supply must be >= 1")
    if expires_at <= now:
        raise PromotionExpired("expires_at must be in the future")

    promotion = Promotion(
        merchant_id=merchant_id,
        title=title,
        description=description,
        category=category,
        discount_percentage=float(discount_percentage),
        original_price_cents=int(original_price_cents),
        max_supply=int(max_supply),
        current_supply=0,
        expires_at=expires_at,
        is_active=True,
        created_at=now,
    )

    try:
        db.add(promotion)
        await db.commit()
        await db.refresh(promotion)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Promotion {promotion.id} created by merchant {merchant_id} (supply={max_supply})")
    return promotion


async def deactivate_promotion(db: AsyncSession, *, promotion_id: int, merchant_id: str) -> Promotion:
    promotion = await get_promotion(db, promotion_id)
    if promotion.merchant_id != merchant_id:
        raise NotOwner("Only the issuing merchant can deactivate this promotion")

    try:
        await db.execute(
            update(Promotion)
            .where(Promotion.id == promotion_id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(promotion)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Promotion {promotion_id} deactivated")
    return promotion


async def _reserve_supply(db: AsyncSession, promotion_id: int, now: datetime) -> Promotion:
    """
    Atomically take one unit of supply.
    Single conditional UPDATE: concurrent claims can never push current_supply past max_supply.
    """
    res = await db.execute(
        update(Promotion)
        .where(
            Promotion.id == promotion_id,
            Promotion.is_active.is_(True),
            Promotion.expires_at > now,
            Promotion.current_supply < Promotion.max_supply,
        )
        .values(current_supply=Promotion.current_supply + 1)
        .execution_options(synchronize_session=False)
    )

    promotion = await get_promotion(db, promotion_id)
    await db.refresh(promotion)

    if res.rowcount == 1:
        return promotion

    # explain why the conditional update matched nothing
    if not promotion.is_active:
        raise PromotionInactive("Promotion is not active")
    if is_expired(promotion, now):
        raise PromotionExpired("Promotion has expired")
    raise SupplyExhausted("Promotion supply exhausted")
