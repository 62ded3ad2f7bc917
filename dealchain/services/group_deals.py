from __future__ import annotations

from datetime import datetime

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import as_naive_utc, resolve_now
from dealchain.models.coupon import Coupon
from dealchain.models.group_deal import GroupDeal, GroupDealParticipant
from dealchain.services import ledger
from dealchain.services.errors import (
    AlreadyExpired,
    InvalidAmount,
    InvalidState,
    InvalidTransition,
    MarketError,
    NotFound,
    NotOwner,
)
from dealchain.services.promotions import get_promotion


NO_DISCOUNT = 0.0

SUCCESSFUL = "successful"
FAILED = "failed"


def validate_tiers(tiers: list[dict]) -> list[dict]:
    """Normalize tiers; thresholds and discounts must both strictly increase."""
    if not tiers:
        raise InvalidAmount("At least one tier is required")

    out = []
    for t in tiers:
        threshold = int(t["participant_threshold"])
        discount = float(t["discount_percentage"])
        if threshold < 1:
            raise InvalidAmount("participant_threshold must be >= 1")
        if not 0 <= discount <= 100:
            raise InvalidAmount("discount_percentage must be between 0 and 100")
        out.append({"participant_threshold": threshold, "discount_percentage": discount})

    for prev, cur in zip(out, out[1:]):
        if cur["participant_threshold"] <= prev["participant_threshold"]:
            raise InvalidAmount("Tier thresholds must be strictly increasing")
        if cur["discount_percentage"] <= prev["discount_percentage"]:
            raise InvalidAmount("Tier discounts must be strictly increasing")
    return out


def active_tier(tiers: list[dict], participants: int) -> dict | None:
    """Highest tier whose threshold is reached, or None."""
    reached = None
    for t in tiers:
        if t["participant_threshold"] <= participants:
            reached = t
        else:
            break
    return reached


def discount_for(tiers: list[dict], participants: int) -> float:
    tier = active_tier(tiers, participants)
    return float(tier["discount_percentage"]) if tier else NO_DISCOUNT


def outcome_for(participants: int, target: int | None) -> str:
    if target is not None and participants < target:
        return FAILED
    return SUCCESSFUL


def active_discount(deal: GroupDeal) -> float:
    if deal.frozen_discount_percentage is not None:
        return deal.frozen_discount_percentage
    return discount_for(deal.tiers, deal.current_participants)


async def get_group_deal(db: AsyncSession, group_deal_id: int, *, lock: bool = False) -> GroupDeal:
    q = select(GroupDeal).where(GroupDeal.id == group_deal_id).execution_options(populate_existing=True)
    if lock:
        q = q.with_for_update()
    res = await db.execute(q)
    deal = res.scalar_one_or_none()
    if not deal:
        raise NotFound("Group deal not found")
    return deal


async def list_group_deals(
    db: AsyncSession,
    *,
    promotion_id: int | None = None,
    open_only: bool = False,
    now: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[GroupDeal]:
    now = resolve_now(now)
    q = select(GroupDeal)
    if promotion_id is not None:
        q = q.where(GroupDeal.promotion_id == promotion_id)
    if open_only:
        q = q.where(GroupDeal.expires_at > now)
    q = q.order_by(GroupDeal.expires_at.asc(), GroupDeal.id.asc()).offset(offset).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def _get_participant(
    db: AsyncSession, group_deal_id: int, user_id: str, *, lock: bool = False
) -> GroupDealParticipant | None:
    q = (
        select(GroupDealParticipant)
        .where(
            GroupDealParticipant.group_deal_id == group_deal_id,
            GroupDealParticipant.user_id == user_id,
        )
        .execution_options(populate_existing=True)
    )
    if lock:
        q = q.with_for_update()
    res = await db.execute(q)
    return res.scalar_one_or_none()


async def list_participants(db: AsyncSession, *, group_deal_id: int) -> list[GroupDealParticipant]:
    res = await db.execute(
        select(GroupDealParticipant)
        .where(GroupDealParticipant.group_deal_id == group_deal_id)
        .order_by(GroupDealParticipant.id)
    )
    return list(res.scalars().all())


async def create_group_deal(
    db: AsyncSession,
    *,
    promotion_id: int,
    merchant_id: str,
    tiers: list[dict],
    expires_at: datetime,
    title: str | None = None,
    max_participants: int | None = None,
    target_participants: int | None = None,
    now: datetime | None = None,
) -> GroupDeal:
    now = resolve_now(now)
    expires_at = as_naive_utc(expires_at)
    tiers = validate_tiers(tiers)

    if expires_at <= now:
        raise InvalidAmount("expires_at must be in the future")
    if max_participants is not None and max_participants < 1:
        raise InvalidAmount("max_participants must be >= 1")
    if target_participants is not None:
        if target_participants < 1:
            raise InvalidAmount("target_participants must be >= 1")
        if max_participants is not None and target_participants > max_participants:
            raise InvalidAmount("target_participants cannot exceed max_participants")

    promotion = await get_promotion(db, promotion_id)
    if promotion.merchant_id != merchant_id:
        raise NotOwner("Only the issuing merchant can open a group deal on this promotion")

    deal = GroupDeal(
        promotion_id=promotion_id,
        merchant_id=merchant_id,
        title=title,
        tiers=tiers,
        current_participants=0,
        max_participants=max_participants,
        target_participants=target_participants,
        expires_at=expires_at,
        created_at=now,
    )
    try:
        db.add(deal)
        await db.commit()
        await db.refresh(deal)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Group deal {deal.id} opened on promotion {promotion_id} with {len(tiers)} tiers")
    return deal


async def join(
    db: AsyncSession,
    *,
    group_deal_id: int,
    user_id: str,
    now: datetime | None = None,
) -> GroupDeal:
    """Join once; a repeat join by the same user changes nothing."""
    now = resolve_now(now)

    try:
        deal = await get_group_deal(db, group_deal_id, lock=True)
        if now >= deal.expires_at:
            raise AlreadyExpired("Group deal has expired")

        if await _get_participant(db, group_deal_id, user_id) is not None:
            await db.commit()
            return deal

        q = update(GroupDeal).where(GroupDeal.id == group_deal_id)
        if deal.max_participants is not None:
            q = q.where(GroupDeal.current_participants < GroupDeal.max_participants)
        res = await db.execute(
            q.values(current_participants=GroupDeal.current_participants + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvalidState("Group deal is full")

        try:
            async with db.begin_nested():
                db.add(GroupDealParticipant(group_deal_id=group_deal_id, user_id=user_id, joined_at=now))
        except IntegrityError:
            # joined concurrently by the same user; drop our increment too
            await db.rollback()
            return await get_group_deal(db, group_deal_id)

        await db.commit()
        await db.refresh(deal)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"{user_id} joined group deal {group_deal_id} ({deal.current_participants} participants)")
    return deal


async def leave(
    db: AsyncSession,
    *,
    group_deal_id: int,
    user_id: str,
    now: datetime | None = None,
) -> GroupDeal:
    now = resolve_now(now)

    try:
        deal = await get_group_deal(db, group_deal_id, lock=True)
        if now >= deal.expires_at:
            raise AlreadyExpired("Group deal has expired")

        res = await db.execute(
            delete(GroupDealParticipant).where(
                GroupDealParticipant.group_deal_id == group_deal_id,
                GroupDealParticipant.user_id == user_id,
            )
        )
        if res.rowcount != 1:
            raise NotFound("Not a participant of this group deal")

        await db.execute(
            update(GroupDeal)
            .where(GroupDeal.id == group_deal_id, GroupDeal.current_participants > 0)
            .values(current_participants=GroupDeal.current_participants - 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(deal)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"{user_id} left group deal {group_deal_id}")
    return deal


async def _freeze(db: AsyncSession, deal: GroupDeal, now: datetime) -> GroupDeal:
    if deal.frozen_at is not None:
        return deal

    await db.execute(
        update(GroupDeal)
        .where(GroupDeal.id == deal.id, GroupDeal.frozen_at.is_(None))
        .values(
            frozen_discount_percentage=discount_for(deal.tiers, deal.current_participants),
            frozen_participants=deal.current_participants,
            frozen_at=now,
            outcome=outcome_for(deal.current_participants, deal.target_participants),
        )
        .execution_options(synchronize_session=False)
    )
    # whoever froze first wins; everyone reads the stored value
    await db.refresh(deal)
    logger.info(
        f"Group deal {deal.id} frozen at {deal.frozen_discount_percentage}% "
        f"with {deal.frozen_participants} participants ({deal.outcome})"
    )
    return deal


async def finalize(
    db: AsyncSession,
    *,
    group_deal_id: int,
    merchant_id: str | None = None,
    now: datetime | None = None,
) -> GroupDeal:
    """Freeze the deal after expiry and record whether it reached its target. Idempotent."""
    now = resolve_now(now)

    try:
        deal = await get_group_deal(db, group_deal_id, lock=True)
        if merchant_id is not None and deal.merchant_id != merchant_id:
            raise NotOwner("Only the issuing merchant can finalize this group deal")
        if now < deal.expires_at:
            raise InvalidState("Group deal has not expired yet")

        deal = await _freeze(db, deal, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    return deal


async def convert_to_claim(
    db: AsyncSession,
    *,
    group_deal_id: int,
    user_id: str,
    now: datetime | None = None,
) -> Coupon:
    """
    Turn a participant into a coupon holder at the discount frozen at expiry.
    Converting the same participant again returns the coupon already issued.
    """
    now = resolve_now(now)

    try:
        deal = await get_group_deal(db, group_deal_id, lock=True)
        if now < deal.expires_at:
            raise InvalidState("Group deal has not expired yet")

        participant = await _get_participant(db, group_deal_id, user_id, lock=True)
        if participant is None:
            raise NotFound("Not a participant of this group deal")
        if participant.coupon_id is not None:
            coupon = await ledger.get_coupon(db, participant.coupon_id)
            await db.commit()
            return coupon

        deal = await _freeze(db, deal, now)
        if deal.outcome == FAILED:
            await db.commit()
            raise InvalidState("Group deal did not reach its target")

        coupon = await ledger._claim(
            db,
            promotion_id=deal.promotion_id,
            user_id=user_id,
            now=now,
            discount_percentage=deal.frozen_discount_percentage,
            reason="group_deal",
        )

        res = await db.execute(
            update(GroupDealParticipant)
            .where(GroupDealParticipant.id == participant.id, GroupDealParticipant.coupon_id.is_(None))
            .values(coupon_id=coupon.id, converted_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvalidTransition("Participant converted concurrently, retry")

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Group deal {group_deal_id}: {user_id} converted to coupon {coupon.id}")
    return coupon


async def convert_all(
    db: AsyncSession,
    *,
    group_deal_id: int,
    now: datetime | None = None,
) -> tuple[list[Coupon], dict[str, str]]:
    """Convert every participant; returns (coupons, {user_id: error_code}) for failures."""
    now = resolve_now(now)
    deal = await finalize(db, group_deal_id=group_deal_id, now=now)
    if deal.outcome == FAILED:
        raise InvalidState("Group deal did not reach its target")

    participants = await list_participants(db, group_deal_id=group_deal_id)
    # a failed conversion rolls back and expires loaded rows
    user_ids = [p.user_id for p in participants]

    coupons: list[Coupon] = []
    failed: dict[str, str] = {}
    for user_id in user_ids:
        try:
            coupons.append(await convert_to_claim(db, group_deal_id=group_deal_id, user_id=user_id, now=now))
        except MarketError as e:
            logger.warning(f"Group deal {group_deal_id}: conversion failed for {user_id}: {e.code}")
            failed[user_id] = e.code

    return coupons, failed
