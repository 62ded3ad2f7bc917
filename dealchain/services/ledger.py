# dealchain/services/ledger.py
"""
Coupon ledger: the only writer of Coupon.state and Coupon.owner_id.

Listings, auctions, staking and redemption ask for transitions through
this module. Every write is a compare-and-swap on (id, version, state), so
of two concurrent transition requests on the same coupon exactly one wins
and the other observes InvalidTransition.
"""
from __future__ import annotations

from datetime import datetime

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import resolve_now
from dealchain.models.coupon import TERMINAL_STATES, Coupon, CouponState, CouponTransfer
from dealchain.models.listing import Listing
from dealchain.models.promotion import Promotion
from dealchain.models.redemption_token import RedemptionToken
from dealchain.services.errors import (
    InvalidState,
    InvalidTransition,
    NotFound,
    NotOwner,
)
from dealchain.services.events import log_event
from dealchain.services.promotions import _reserve_supply


S = CouponState

LEGAL_TRANSITIONS: dict[CouponState, frozenset[CouponState]] = {
    S.ACTIVE: frozenset({S.LISTED, S.STAKED, S.IN_AUCTION, S.REDEEMED, S.EXPIRED}),
    S.LISTED: frozenset({S.ACTIVE, S.EXPIRED}),
    S.STAKED: frozenset({S.ACTIVE}),
    S.IN_AUCTION: frozenset({S.ACTIVE}),
    S.REDEEMED: frozenset(),
    S.EXPIRED: frozenset(),
}

# transitions only the current owner may request
OWNER_GATED: frozenset[tuple[CouponState, CouponState]] = frozenset(
    {
        (S.ACTIVE, S.LISTED),
        (S.ACTIVE, S.STAKED),
        (S.ACTIVE, S.IN_AUCTION),
    }
)

_CAS_ATTEMPTS = 3


def can_transition(current: CouponState, to: CouponState) -> bool:
    return to in LEGAL_TRANSITIONS[current]


# -------------------------
# Reads
# -------------------------
async def get_coupon(db: AsyncSession, coupon_id: int, *, lock: bool = False) -> Coupon:
    q = select(Coupon).where(Coupon.id == coupon_id).execution_options(populate_existing=True)
    if lock:
        q = q.with_for_update()

    res = await db.execute(q)
    coupon = res.scalar_one_or_none()
    if not coupon:
        raise NotFound("Coupon not found")
    return coupon


async def list_coupons(
    db: AsyncSession,
    *,
    owner_id: str | None = None,
    state: str | None = None,
    promotion_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Coupon]:
    q = select(Coupon)

    if owner_id:
        q = q.where(Coupon.owner_id == owner_id)
    if state:
        q = q.where(Coupon.state == state)
    if promotion_id is not None:
        q = q.where(Coupon.promotion_id == promotion_id)

    q = q.order_by(Coupon.claimed_at.desc(), Coupon.id.desc()).offset(offset).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def get_transfer_history(db: AsyncSession, *, coupon_id: int) -> list[CouponTransfer]:
    await get_coupon(db, coupon_id)
    res = await db.execute(
        select(CouponTransfer).where(CouponTransfer.coupon_id == coupon_id).order_by(CouponTransfer.id)
    )
    return list(res.scalars().all())


# -------------------------
# Compare-and-swap primitive
# -------------------------
async def _cas(
    db: AsyncSession,
    coupon_id: int,
    *,
    version: int,
    expected_state: CouponState,
    now: datetime,
    **values,
) -> bool:
    """UPDATE coupons ... WHERE id, version and state still match. True if this call won."""
    res = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.version == version,
            Coupon.state == expected_state.value,
        )
        .values(version=Coupon.version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _bump_version(db: AsyncSession, coupon: Coupon, *, now: datetime) -> Coupon:
    """
    Claim exclusive write access to the coupon without changing its state.
    Fails with InvalidTransition if anyone else wrote it since it was read.
    """
    if not await _cas(db, coupon.id, version=coupon.version, expected_state=coupon.coupon_state, now=now):
        await db.refresh(coupon)
        raise InvalidTransition("Coupon was modified concurrently, retry")
    await db.refresh(coupon)
    return coupon


async def _void_tokens(db: AsyncSession, coupon_id: int, *, now: datetime, reason: str) -> int:
    """Retire every outstanding redemption code of the coupon."""
    res = await db.execute(
        update(RedemptionToken)
        .where(
            RedemptionToken.coupon_id == coupon_id,
            RedemptionToken.consumed.is_(False),
            RedemptionToken.superseded_at.is_(None),
        )
        .values(superseded_at=now, void_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount


# -------------------------
# Claim
# -------------------------
async def _claim(
    db: AsyncSession,
    *,
    promotion_id: int,
    user_id: str,
    now: datetime,
    discount_percentage: float | None = None,
    reason: str = "claim",
) -> Coupon:
    promotion: Promotion = await _reserve_supply(db, promotion_id, now)

    coupon = Coupon(
        promotion_id=promotion.id,
        owner_id=user_id,
        state=S.ACTIVE.value,
        discount_percentage=float(
            promotion.discount_percentage if discount_percentage is None else discount_percentage
        ),
        version=1,
        claimed_at=now,
        updated_at=now,
    )
    db.add(coupon)
    await db.flush()

    db.add(
        CouponTransfer(
            coupon_id=coupon.id,
            from_id=None,
            to_id=user_id,
            reason=reason,
            created_at=now,
        )
    )
    await log_event(
        db,
        coupon_id=coupon.id,
        actor_id=user_id,
        event_type="claimed",
        meta={
            "promotion_id": promotion.id,
            "merchant_id": promotion.merchant_id,
            "discount_percentage": coupon.discount_percentage,
            "reason": reason,
        },
    )
    await db.flush()
    await db.refresh(coupon)
    return coupon


async def claim(
    db: AsyncSession,
    *,
    promotion_id: int,
    user_id: str,
    now: datetime | None = None,
) -> Coupon:
    """
    Claim one unit of a promotion.
    Atomic: supply increment + coupon + history entry + claimed event.
    """
    now = resolve_now(now)
    try:
        coupon = await _claim(db, promotion_id=promotion_id, user_id=user_id, now=now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Coupon {coupon.id} claimed from promotion {promotion_id} by {user_id}")
    return coupon


# -------------------------
# Transitions
# -------------------------
async def _transition(
    db: AsyncSession,
    coupon_id: int,
    *,
    to: CouponState,
    actor_id: str | None,
    now: datetime,
    **values,
) -> Coupon:
    to = CouponState(to)
    coupon = await get_coupon(db, coupon_id, lock=True)

    for _ in range(_CAS_ATTEMPTS):
        current = coupon.coupon_state

        if not can_transition(current, to):
            raise InvalidTransition(f"Coupon cannot move from {current.value} to {to.value}")
        if (current, to) in OWNER_GATED and actor_id != coupon.owner_id:
            raise NotOwner("Only the coupon owner can do this")

        won = await _cas(
            db,
            coupon_id,
            version=coupon.version,
            expected_state=current,
            now=now,
            state=to.value,
            **values,
        )
        if won:
            if current == S.ACTIVE:
                # a code issued while Active must not outlive it
                await _void_tokens(db, coupon_id, now=now, reason=f"state_{to.value}")
            await db.refresh(coupon)
            return coupon

        # lost the race: re-read and re-validate against the new state
        await db.refresh(coupon)

    raise InvalidTransition("Coupon is being modified concurrently, retry")


async def request_transition(
    db: AsyncSession,
    *,
    coupon_id: int,
    to: CouponState,
    actor_id: str | None,
    now: datetime | None = None,
) -> Coupon:
    now = resolve_now(now)
    try:
        coupon = await _transition(db, coupon_id, to=to, actor_id=actor_id, now=now)
        await log_event(
            db,
            coupon_id=coupon_id,
            actor_id=actor_id,
            event_type=f"state_{coupon.state}",
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Coupon {coupon_id} -> {coupon.state} (actor={actor_id})")
    return coupon


# -------------------------
# Ownership
# -------------------------
async def _transfer_ownership(
    db: AsyncSession,
    coupon_id: int,
    *,
    from_id: str,
    to_id: str,
    reason: str,
    now: datetime,
    reference: str | None = None,
) -> Coupon:
    coupon = await get_coupon(db, coupon_id, lock=True)

    if coupon.coupon_state in TERMINAL_STATES:
        raise InvalidState(f"Coupon is {coupon.state}; ownership can no longer change")
    if coupon.coupon_state == S.STAKED:
        # the stake position is bound to the staker
        raise InvalidState("Staked coupons cannot change owner, unstake first")
    if coupon.owner_id != from_id:
        raise NotOwner("Transfer source is not the coupon owner")

    won = await _cas(
        db,
        coupon_id,
        version=coupon.version,
        expected_state=coupon.coupon_state,
        now=now,
        owner_id=to_id,
    )
    await db.refresh(coupon)
    if not won:
        raise InvalidTransition("Coupon was modified concurrently, retry")

    await _void_tokens(db, coupon_id, now=now, reason="transferred")

    db.add(
        CouponTransfer(
            coupon_id=coupon_id,
            from_id=from_id,
            to_id=to_id,
            reason=reason,
            reference=reference,
            created_at=now,
        )
    )
    await log_event(
        db,
        coupon_id=coupon_id,
        actor_id=from_id,
        event_type="transferred",
        meta={"from": from_id, "to": to_id, "reason": reason, "reference": reference},
    )
    await db.flush()
    return coupon


async def transfer_ownership(
    db: AsyncSession,
    *,
    coupon_id: int,
    from_id: str,
    to_id: str,
    reason: str,
    now: datetime | None = None,
) -> Coupon:
    """
    Move an Active coupon to a new owner without touching its state.
    Listed and in-auction coupons change hands only through their listing or auction.
    """
    now = resolve_now(now)
    try:
        coupon = await get_coupon(db, coupon_id, lock=True)
        if coupon.coupon_state not in TERMINAL_STATES and coupon.coupon_state != S.ACTIVE:
            raise InvalidState(f"Coupon is {coupon.state}; only active coupons change owner directly")

        coupon = await _transfer_ownership(
            db, coupon_id, from_id=from_id, to_id=to_id, reason=reason, now=now
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Coupon {coupon_id} transferred {from_id} -> {to_id} ({reason})")
    return coupon


async def gift(
    db: AsyncSession,
    *,
    coupon_id: int,
    from_id: str,
    to_id: str,
    now: datetime | None = None,
) -> Coupon:
    """Owner hands an Active coupon to someone else, no payment involved."""
    now = resolve_now(now)
    if from_id == to_id:
        raise InvalidState("Cannot gift a coupon to yourself")

    try:
        coupon = await get_coupon(db, coupon_id, lock=True)
        if coupon.owner_id != from_id:
            raise NotOwner("Only the coupon owner can gift it")
        if coupon.coupon_state != S.ACTIVE:
            raise InvalidState("Only active coupons can be gifted")

        coupon = await _transfer_ownership(
            db, coupon_id, from_id=from_id, to_id=to_id, reason="gift", now=now
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Coupon {coupon_id} gifted {from_id} -> {to_id}")
    return coupon


# -------------------------
# Expiry sweep
# -------------------------
async def expire_sweep(db: AsyncSession, *, now: datetime | None = None) -> int:
    """
    Move Active / Listed coupons of lapsed promotions to Expired.
    Staked and in-auction coupons are left alone. Idempotent.
    """
    now = resolve_now(now)

    res = await db.execute(
        select(Coupon)
        .join(Promotion, Promotion.id == Coupon.promotion_id)
        .where(
            Promotion.expires_at <= now,
            Coupon.state.in_([S.ACTIVE.value, S.LISTED.value]),
        )
        .order_by(Coupon.id)
        .execution_options(populate_existing=True)
    )
    candidates = list(res.scalars().all())

    expired = 0
    try:
        for coupon in candidates:
            was_listed = coupon.coupon_state == S.LISTED
            won = await _cas(
                db,
                coupon.id,
                version=coupon.version,
                expected_state=coupon.coupon_state,
                now=now,
                state=S.EXPIRED.value,
                expired_at=now,
            )
            if not won:
                # someone else moved it since the scan; the next sweep re-evaluates it
                logger.debug(f"Expire sweep skipped coupon {coupon.id}: concurrent update")
                continue

            if was_listed:
                await db.execute(
                    update(Listing)
                    .where(Listing.coupon_id == coupon.id, Listing.is_active.is_(True))
                    .values(is_active=False, closed_at=now, close_reason="expired")
                    .execution_options(synchronize_session=False)
                )

            await _void_tokens(db, coupon.id, now=now, reason="expired")
            await log_event(db, coupon_id=coupon.id, actor_id=None, event_type="expired")
            expired += 1

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if expired:
        logger.info(f"Expire sweep moved {expired} coupons to expired")
    return expired
