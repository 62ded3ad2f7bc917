from __future__ import annotations

from datetime import datetime

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import resolve_now
from dealchain.integrations.settlement_client import SettlementGateway, compensate
from dealchain.models.coupon import Coupon, CouponState
from dealchain.models.listing import Listing
from dealchain.services import ledger
from dealchain.services.errors import (
    InvalidPrice,
    InvalidState,
    ListingNotActive,
    NotFound,
    NotOwner,
    PromotionExpired,
    SelfPurchase,
    SettlementDeclined,
    SettlementUnavailable,
)
from dealchain.services.events import log_event
from dealchain.services.promotions import is_expired


# listing closed and held for one buyer while their payment is in flight
PENDING_SALE = "sold_pending"


async def get_listing(db: AsyncSession, listing_id: int, *, lock: bool = False) -> Listing:
    q = select(Listing).where(Listing.id == listing_id).execution_options(populate_existing=True)
    if lock:
        q = q.with_for_update()
    res = await db.execute(q)
    listing = res.scalar_one_or_none()
    if not listing:
        raise NotFound("Listing not found")
    return listing


async def list_active_listings(
    db: AsyncSession,
    *,
    seller_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Listing]:
    q = select(Listing).where(Listing.is_active.is_(True))
    if seller_id:
        q = q.where(Listing.seller_id == seller_id)
    q = q.order_by(Listing.created_at.desc(), Listing.id.desc()).offset(offset).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def _close_listing(
    db: AsyncSession,
    listing: Listing,
    *,
    reason: str,
    now: datetime,
    buyer_id: str | None = None,
    settlement_ref: str | None = None,
) -> None:
    res = await db.execute(
        update(Listing)
        .where(Listing.id == listing.id, Listing.is_active.is_(True))
        .values(
            is_active=False,
            closed_at=now,
            close_reason=reason,
            buyer_id=buyer_id,
            settlement_ref=settlement_ref,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ListingNotActive("Listing is no longer active")
    await db.refresh(listing)


async def create_listing(
    db: AsyncSession,
    *,
    coupon_id: int,
    seller_id: str,
    price_cents: int,
    now: datetime | None = None,
) -> Listing:
    now = resolve_now(now)
    if price_cents is None or int(price_cents) <= 0:
        raise InvalidPrice("Price must be positive")

    try:
        coupon: Coupon = await ledger.get_coupon(db, coupon_id, lock=True)
        if coupon.owner_id != seller_id:
            raise NotOwner("Only the coupon owner can list it")
        if coupon.coupon_state != CouponState.ACTIVE:
            raise InvalidState(f"Coupon is {coupon.state}; only active coupons can be listed")

        await ledger._transition(db, coupon_id, to=CouponState.LISTED, actor_id=seller_id, now=now)

        listing = Listing(
            coupon_id=coupon_id,
            seller_id=seller_id,
            price_cents=int(price_cents),
            created_at=now,
            is_active=True,
        )
        db.add(listing)
        await db.flush()

        await log_event(
            db,
            coupon_id=coupon_id,
            actor_id=seller_id,
            event_type="listed",
            meta={"listing_id": listing.id, "price_cents": listing.price_cents},
        )
        await db.commit()
        await db.refresh(listing)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Listing {listing.id} created for coupon {coupon_id} at {price_cents}c")
    return listing


async def update_listing_price(
    db: AsyncSession,
    *,
    listing_id: int,
    actor_id: str,
    price_cents: int,
) -> Listing:
    if price_cents is None or int(price_cents) <= 0:
        raise InvalidPrice("Price must be positive")

    try:
        listing = await get_listing(db, listing_id, lock=True)
        if listing.seller_id != actor_id:
            raise NotOwner("Only the seller can reprice this listing")
        if not listing.is_active:
            raise ListingNotActive("Listing is no longer active")

        res = await db.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.is_active.is_(True))
            .values(price_cents=int(price_cents))
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ListingNotActive("Listing is no longer active")

        await db.commit()
        await db.refresh(listing)
    except Exception:
        await db.rollback()
        raise

    return listing


async def cancel_listing(
    db: AsyncSession,
    *,
    listing_id: int,
    actor_id: str,
    now: datetime | None = None,
) -> Listing:
    now = resolve_now(now)

    try:
        listing = await get_listing(db, listing_id, lock=True)
        if listing.seller_id != actor_id:
            raise NotOwner("Only the seller can cancel this listing")
        if not listing.is_active:
            raise ListingNotActive("Listing is no longer active")

        await _close_listing(db, listing, reason="cancelled", now=now)
        await ledger._transition(
            db, listing.coupon_id, to=CouponState.ACTIVE, actor_id=actor_id, now=now
        )
        await log_event(
            db,
            coupon_id=listing.coupon_id,
            actor_id=actor_id,
            event_type="delisted",
            meta={"listing_id": listing.id},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Listing {listing_id} cancelled by {actor_id}")
    return listing


async def _reserve_purchase(db: AsyncSession, *, listing_id: int, buyer_id: str, now: datetime) -> Listing:
    try:
        listing = await get_listing(db, listing_id, lock=True)
        resuming = (
            not listing.is_active
            and listing.close_reason == PENDING_SALE
            and listing.buyer_id == buyer_id
        )
        if not resuming:
            if not listing.is_active:
                raise ListingNotActive("Listing is no longer active")
            if listing.seller_id == buyer_id:
                raise SelfPurchase("Cannot buy your own listing")

            listed = await ledger.get_coupon(db, listing.coupon_id, lock=True)
            if is_expired(listed.promotion, now):
                raise PromotionExpired("Promotion has expired; this coupon can no longer be sold")

            # close first so a concurrent buyer loses before any money moves
            await _close_listing(db, listing, reason=PENDING_SALE, now=now, buyer_id=buyer_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    return listing


async def _release_purchase(db: AsyncSession, *, listing_id: int, buyer_id: str) -> None:
    """Put a pending sale back on the market, or close it if the coupon moved on meanwhile."""
    try:
        listing = await get_listing(db, listing_id, lock=True)
        coupon = await ledger.get_coupon(db, listing.coupon_id)

        if coupon.coupon_state == CouponState.LISTED:
            values = {"is_active": True, "closed_at": None, "close_reason": None, "buyer_id": None}
        elif coupon.coupon_state == CouponState.EXPIRED:
            values = {"close_reason": "expired"}
        else:
            values = {"close_reason": "payment_failed"}

        await db.execute(
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.close_reason == PENDING_SALE,
                Listing.buyer_id == buyer_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.warning(f"Listing {listing_id}: purchase by {buyer_id} released")


async def buy(
    db: AsyncSession,
    *,
    listing_id: int,
    buyer_id: str,
    settlement: SettlementGateway,
    now: datetime | None = None,
) -> Coupon:
    """
    Buy a listed coupon.

    The listing is reserved for the buyer and committed, the charge runs
    with no transaction open, then ownership transfer and Listed -> Active
    commit together. A refused charge puts the listing back on sale; a
    charge whose transfer then fails is refunded. The same buyer calling
    again resumes a reservation left pending.
    """
    now = resolve_now(now)
    reference = f"listing:{listing_id}:{buyer_id}"

    listing = await _reserve_purchase(db, listing_id=listing_id, buyer_id=buyer_id, now=now)
    coupon_id, seller_id, price = listing.coupon_id, listing.seller_id, listing.price_cents

    try:
        receipt = await settlement.charge(
            payer_id=buyer_id,
            payee_id=seller_id,
            amount_cents=price,
            reference=reference,
        )
    except (SettlementDeclined, SettlementUnavailable):
        await _release_purchase(db, listing_id=listing_id, buyer_id=buyer_id)
        raise

    try:
        res = await db.execute(
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.close_reason == PENDING_SALE,
                Listing.buyer_id == buyer_id,
            )
            .values(close_reason="sold", closed_at=now, settlement_ref=receipt)
            .execution_options(synchronize_session=False)
        )
        won = res.rowcount == 1
        if won:
            await ledger._transfer_ownership(
                db,
                coupon_id,
                from_id=seller_id,
                to_id=buyer_id,
                reason="sale",
                now=now,
                reference=receipt,
            )
            coupon = await ledger._transition(db, coupon_id, to=CouponState.ACTIVE, actor_id=buyer_id, now=now)
            await log_event(
                db,
                coupon_id=coupon_id,
                actor_id=buyer_id,
                event_type="sold",
                meta={
                    "listing_id": listing_id,
                    "seller_id": seller_id,
                    "price_cents": price,
                    "receipt": receipt,
                },
            )
            await db.commit()
        else:
            await db.rollback()
    except Exception:
        await db.rollback()
        await compensate(settlement, receipt=receipt, reference=reference)
        await _release_purchase(db, listing_id=listing_id, buyer_id=buyer_id)
        raise

    if not won:
        # finished by a concurrent retry of the same purchase
        coupon = await ledger.get_coupon(db, coupon_id)
        await db.commit()
        return coupon

    logger.info(f"Listing {listing_id} sold to {buyer_id} for {price}c")
    return coupon
