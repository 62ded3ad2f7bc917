from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import resolve_now
from dealchain.core.config import settings
from dealchain.models.coupon import Coupon, CouponState
from dealchain.models.stake import StakePosition, StakeStatus
from dealchain.services import ledger
from dealchain.services.errors import (
    InvalidAmount,
    InvalidState,
    InvalidTransition,
    NotFound,
    NotOwner,
    PromotionExpired,
    StillLocked,
)
from dealchain.services.events import log_event
from dealchain.services.promotions import is_expired


def list_tiers() -> list[dict]:
    return [
        {"tier_days": int(days), "apy": float(apy)}
        for days, apy in sorted(settings.STAKING_TIERS.items())
    ]


def compute_rewards(
    *,
    principal_cents: int,
    apy: float,
    anchor: datetime,
    unlocks_at: datetime,
    now: datetime,
) -> float:
    """Linear accrual from the anchor to min(now, unlocks_at), in cents."""
    end = min(now, unlocks_at)
    elapsed = (end - anchor).total_seconds()
    if elapsed <= 0:
        return 0.0
    return principal_cents * (apy / 100.0) * (elapsed / settings.SECONDS_PER_YEAR)


async def get_stake(db: AsyncSession, stake_id: int, *, lock: bool = False) -> StakePosition:
    q = select(StakePosition).where(StakePosition.id == stake_id).execution_options(populate_existing=True)
    if lock:
        q = q.with_for_update()
    res = await db.execute(q)
    position = res.scalar_one_or_none()
    if not position:
        raise NotFound("Stake position not found")
    return position


async def list_stakes(
    db: AsyncSession,
    *,
    owner_id: str,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[StakePosition]:
    q = select(StakePosition).where(StakePosition.owner_id == owner_id)
    if status:
        q = q.where(StakePosition.status == status)
    q = q.order_by(StakePosition.staked_at.desc(), StakePosition.id.desc()).offset(offset).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


def _savings_cents(coupon: Coupon) -> int:
    return int(round(coupon.promotion.original_price_cents * coupon.discount_percentage / 100.0))


async def stake(
    db: AsyncSession,
    *,
    coupon_id: int,
    owner_id: str,
    tier_days: int,
    apy: float | None = None,
    principal_cents: int | None = None,
    now: datetime | None = None,
) -> StakePosition:
    now = resolve_now(now)

    if tier_days is None or tier_days <= 0:
        raise InvalidAmount("tier_days must be positive")
    if apy is None:
        apy = settings.STAKING_TIERS.get(int(tier_days))
        if apy is None:
            raise InvalidAmount(f"No staking tier for {tier_days} days")
    if apy < 0:
        raise InvalidAmount("apy cannot be negative")

    try:
        coupon = await ledger.get_coupon(db, coupon_id, lock=True)
        if coupon.owner_id != owner_id:
            raise NotOwner("Only the coupon owner can stake it")
        if coupon.coupon_state != CouponState.ACTIVE:
            raise InvalidState(f"Coupon is {coupon.state}; only active coupons can be staked")
        if is_expired(coupon.promotion, now):
            raise PromotionExpired("Promotion has expired")

        principal = _savings_cents(coupon) if principal_cents is None else int(principal_cents)
        if principal < 0:
            raise InvalidAmount("principal cannot be negative")

        await ledger._transition(db, coupon_id, to=CouponState.STAKED, actor_id=owner_id, now=now)

        position = StakePosition(
            coupon_id=coupon_id,
            owner_id=owner_id,
            tier_days=int(tier_days),
            apy=float(apy),
            principal_cents=principal,
            staked_at=now,
            unlocks_at=now + timedelta(days=int(tier_days)),
            accrued_rewards=0.0,
            accrual_anchor_at=now,
            last_accrued_at=now,
            total_claimed=0.0,
            status=StakeStatus.LOCKED.value,
            version=1,
        )
        db.add(position)
        await db.flush()

        await log_event(
            db,
            coupon_id=coupon_id,
            actor_id=owner_id,
            event_type="staked",
            meta={"stake_id": position.id, "tier_days": position.tier_days, "apy": position.apy},
        )
        await db.commit()
        await db.refresh(position)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Coupon {coupon_id} staked for {tier_days}d at {apy}% (stake {position.id})")
    return position


async def _accrue(db: AsyncSession, position: StakePosition, now: datetime) -> StakePosition:
    if position.status == StakeStatus.WITHDRAWN.value:
        return position

    computed = compute_rewards(
        principal_cents=position.principal_cents,
        apy=position.apy,
        anchor=position.accrual_anchor_at,
        unlocks_at=position.unlocks_at,
        now=now,
    )
    # a clock that steps backwards never lowers the balance
    accrued = max(position.accrued_rewards, computed)
    status = StakeStatus.UNLOCKED.value if now >= position.unlocks_at else position.status

    res = await db.execute(
        update(StakePosition)
        .where(StakePosition.id == position.id, StakePosition.version == position.version)
        .values(
            accrued_rewards=accrued,
            last_accrued_at=max(position.last_accrued_at, now),
            status=status,
            version=StakePosition.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(position)
    if res.rowcount != 1:
        raise InvalidTransition("Stake position was modified concurrently, retry")
    return position


async def accrue(db: AsyncSession, *, stake_id: int, now: datetime | None = None) -> StakePosition:
    now = resolve_now(now)
    try:
        position = await get_stake(db, stake_id, lock=True)
        position = await _accrue(db, position, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return position


async def claim_rewards(
    db: AsyncSession,
    *,
    stake_id: int,
    actor_id: str,
    now: datetime | None = None,
) -> float:
    """Pay out the accrued balance; accrual restarts from now. Lock state is untouched."""
    now = resolve_now(now)

    try:
        position = await get_stake(db, stake_id, lock=True)
        if position.owner_id != actor_id:
            raise NotOwner("Only the staker can claim rewards")

        position = await _accrue(db, position, now)
        amount = position.accrued_rewards

        res = await db.execute(
            update(StakePosition)
            .where(StakePosition.id == stake_id, StakePosition.version == position.version)
            .values(
                accrued_rewards=0.0,
                accrual_anchor_at=min(now, position.unlocks_at),
                total_claimed=StakePosition.total_claimed + amount,
                version=StakePosition.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvalidTransition("Stake position was modified concurrently, retry")

        await log_event(
            db,
            coupon_id=position.coupon_id,
            actor_id=actor_id,
            event_type="stake_rewards_claimed",
            meta={"stake_id": stake_id, "amount": amount},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Stake {stake_id}: {amount:.4f} rewards claimed by {actor_id}")
    return amount


async def unstake(
    db: AsyncSession,
    *,
    stake_id: int,
    actor_id: str,
    now: datetime | None = None,
) -> Coupon:
    now = resolve_now(now)

    try:
        position = await get_stake(db, stake_id, lock=True)
        if position.owner_id != actor_id:
            raise NotOwner("Only the staker can unstake")
        if position.status == StakeStatus.WITHDRAWN.value:
            raise InvalidState("Stake already withdrawn")
        if now < position.unlocks_at:
            raise StillLocked(f"Stake is locked until {position.unlocks_at.isoformat()}")

        # settle the final accrual before closing the position
        position = await _accrue(db, position, now)

        res = await db.execute(
            update(StakePosition)
            .where(StakePosition.id == stake_id, StakePosition.version == position.version)
            .values(
                status=StakeStatus.WITHDRAWN.value,
                withdrawn_at=now,
                version=StakePosition.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvalidTransition("Stake position was modified concurrently, retry")

        coupon = await ledger._transition(
            db, position.coupon_id, to=CouponState.ACTIVE, actor_id=actor_id, now=now
        )
        await log_event(
            db,
            coupon_id=coupon.id,
            actor_id=actor_id,
            event_type="unstaked",
            meta={"stake_id": stake_id, "accrued_rewards": position.accrued_rewards},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Stake {stake_id} withdrawn, coupon {coupon.id} active again")
    return coupon
