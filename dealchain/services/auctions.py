"""
Auction engine: time-boxed bidding over an escrowed coupon.

The coupon stays owned by the seller in the InAuction state until the
auction is settled, bought out, or cancelled. Bids are a compare-and-swap on
the auction's version, so near the close two bids of the same amount can
never both be accepted.

Payment sits between two short transactions. The winner is fixed first
(status Settling, committed), the settlement gateway is called with no
transaction open, and the transfer commits afterwards.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import resolve_now
from dealchain.core.config import settings
from dealchain.integrations.settlement_client import SettlementGateway, compensate
from dealchain.models.auction import CLOSED_STATUSES, Auction, AuctionBid, AuctionStatus
from dealchain.models.coupon import Coupon, CouponState
from dealchain.services import ledger
from dealchain.services.errors import (
    AuctionEnded,
    AuctionNotEnded,
    BidTooLow,
    InvalidAmount,
    InvalidPrice,
    InvalidState,
    InvalidTransition,
    MarketError,
    NotFound,
    NotOwner,
    PromotionExpired,
    SelfBid,
    SelfPurchase,
    SettlementDeclined,
    SettlementUnavailable,
)
from dealchain.services.events import log_event
from dealchain.services.promotions import is_expired


_CAS_ATTEMPTS = 3


@dataclass
class SettlementResult:
    auction: Auction
    coupon: Coupon
    sold: bool
    declined: bool = False


def view_status(auction: Auction, now: datetime | None = None, threshold_seconds: int | None = None) -> AuctionStatus:
    """Persisted status, with Live shown as EndingSoon inside the closing window."""
    now = resolve_now(now)
    status = AuctionStatus(auction.status)
    if status != AuctionStatus.LIVE:
        return status

    threshold = settings.AUCTION_ENDING_SOON_SECONDS if threshold_seconds is None else threshold_seconds
    if auction.ends_at - now <= timedelta(seconds=threshold):
        return AuctionStatus.ENDING_SOON
    return status


async def get_auction(db: AsyncSession, auction_id: int, *, lock: bool = False) -> Auction:
    q = select(Auction).where(Auction.id == auction_id).execution_options(populate_existing=True)
    if lock:
        q = q.with_for_update()
    res = await db.execute(q)
    auction = res.scalar_one_or_none()
    if not auction:
        raise NotFound("Auction not found")
    return auction


async def list_auctions(
    db: AsyncSession,
    *,
    status: str | None = None,
    seller_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Auction]:
    q = select(Auction)
    if status:
        q = q.where(Auction.status == status)
    if seller_id:
        q = q.where(Auction.seller_id == seller_id)
    q = q.order_by(Auction.ends_at.asc(), Auction.id.asc()).offset(offset).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def list_bids(db: AsyncSession, *, auction_id: int) -> list[AuctionBid]:
    res = await db.execute(
        select(AuctionBid).where(AuctionBid.auction_id == auction_id).order_by(AuctionBid.id)
    )
    return list(res.scalars().all())


async def _cas_auction(
    db: AsyncSession,
    auction: Auction,
    *,
    expected: AuctionStatus = AuctionStatus.LIVE,
    **values,
) -> bool:
    res = await db.execute(
        update(Auction)
        .where(
            Auction.id == auction.id,
            Auction.version == auction.version,
            Auction.status == expected.value,
        )
        .values(version=Auction.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def create_auction(
    db: AsyncSession,
    *,
    coupon_id: int,
    seller_id: str,
    starting_price_cents: int,
    duration_seconds: int,
    reserve_price_cents: int = 0,
    buy_now_price_cents: int | None = None,
    extend_on_bid: bool = True,
    extension_seconds: int | None = None,
    now: datetime | None = None,
) -> Auction:
    now = resolve_now(now)
    extension_seconds = (
        settings.AUCTION_DEFAULT_EXTENSION_SECONDS if extension_seconds is None else int(extension_seconds)
    )

    if starting_price_cents is None or starting_price_cents <= 0:
        raise InvalidPrice("starting price must be positive")
    if reserve_price_cents < 0:
        raise InvalidPrice("reserve price cannot be negative")
    if buy_now_price_cents is not None and buy_now_price_cents <= starting_price_cents:
        raise InvalidPrice("buy-now price must exceed the starting price")
    if duration_seconds <= 0:
        raise InvalidAmount("duration must be positive")
    if extension_seconds < 0:
        raise InvalidAmount("extension cannot be negative")

    try:
        coupon = await ledger.get_coupon(db, coupon_id, lock=True)
        if coupon.owner_id != seller_id:
            raise NotOwner("Only the coupon owner can auction it")
        if coupon.coupon_state != CouponState.ACTIVE:
            raise InvalidState(f"Coupon is {coupon.state}; only active coupons can be auctioned")
        if is_expired(coupon.promotion, now):
            raise PromotionExpired("Promotion has expired")

        await ledger._transition(db, coupon_id, to=CouponState.IN_AUCTION, actor_id=seller_id, now=now)

        auction = Auction(
            coupon_id=coupon_id,
            seller_id=seller_id,
            starting_price_cents=int(starting_price_cents),
            reserve_price_cents=int(reserve_price_cents),
            buy_now_price_cents=buy_now_price_cents,
            current_bid_cents=0,
            highest_bidder_id=None,
            bid_count=0,
            starts_at=now,
            ends_at=now + timedelta(seconds=int(duration_seconds)),
            extend_on_bid=bool(extend_on_bid),
            extension_seconds=extension_seconds,
            extension_count=0,
            status=AuctionStatus.LIVE.value,
            version=1,
        )
        db.add(auction)
        await db.flush()

        await log_event(
            db,
            coupon_id=coupon_id,
            actor_id=seller_id,
            event_type="auctioned",
            meta={"auction_id": auction.id, "starting_price_cents": auction.starting_price_cents},
        )
        await db.commit()
        await db.refresh(auction)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Auction {auction.id} opened for coupon {coupon_id}, ends {auction.ends_at.isoformat()}")
    return auction


def _check_bid(auction: Auction, *, bidder_id: str, amount_cents: int, now: datetime) -> None:
    if auction.status != AuctionStatus.LIVE.value or now >= auction.ends_at:
        raise AuctionEnded("Auction has ended")
    if auction.seller_id == bidder_id:
        raise SelfBid("Cannot bid on your own auction")
    if amount_cents <= auction.current_bid_cents:
        raise BidTooLow("Bid must be higher than the current bid")
    if amount_cents < auction.starting_price_cents:
        raise BidTooLow("Bid is below the starting price")


def _extended_deadline(auction: Auction, now: datetime) -> tuple[datetime, int]:
    """Anti-snipe: a bid inside the extension window pushes the close to now + extension."""
    if not auction.extend_on_bid or auction.extension_seconds <= 0:
        return auction.ends_at, auction.extension_count

    window = timedelta(seconds=auction.extension_seconds)
    if auction.ends_at - now >= window:
        return auction.ends_at, auction.extension_count

    cap = settings.MAX_AUCTION_EXTENSIONS
    if cap and auction.extension_count >= cap:
        return auction.ends_at, auction.extension_count

    return max(auction.ends_at, now + window), auction.extension_count + 1


async def place_bid(
    db: AsyncSession,
    *,
    auction_id: int,
    bidder_id: str,
    amount_cents: int,
    now: datetime | None = None,
) -> Auction:
    now = resolve_now(now)
    if amount_cents is None or amount_cents <= 0:
        raise InvalidAmount("Bid amount must be positive")

    try:
        auction = await get_auction(db, auction_id, lock=True)

        for _ in range(_CAS_ATTEMPTS):
            _check_bid(auction, bidder_id=bidder_id, amount_cents=amount_cents, now=now)
            ends_at, extension_count = _extended_deadline(auction, now)

            won = await _cas_auction(
                db,
                auction,
                current_bid_cents=int(amount_cents),
                highest_bidder_id=bidder_id,
                bid_count=Auction.bid_count + 1,
                ends_at=ends_at,
                extension_count=extension_count,
            )
            await db.refresh(auction)
            if won:
                break
            # lost the race: re-validate against the bid that beat us
        else:
            raise InvalidTransition("Auction is being modified concurrently, retry")

        db.add(
            AuctionBid(
                auction_id=auction_id,
                bidder_id=bidder_id,
                amount_cents=int(amount_cents),
                created_at=now,
            )
        )
        await db.commit()
        await db.refresh(auction)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Auction {auction_id}: bid {amount_cents}c by {bidder_id}, ends {auction.ends_at.isoformat()}")
    return auction


def _reference(auction: Auction) -> str:
    if auction.bought_now:
        return f"auction:{auction.id}:buy_now:{auction.winner_id}"
    return f"auction:{auction.id}"


async def _recorded(db: AsyncSession, auction_id: int) -> SettlementResult:
    auction = await get_auction(db, auction_id)
    coupon = await ledger.get_coupon(db, auction.coupon_id)
    await db.commit()
    return SettlementResult(auction=auction, coupon=coupon, sold=auction.status == AuctionStatus.SETTLED.value)


async def _unwind(
    db: AsyncSession,
    auction_id: int,
    *,
    now: datetime,
    reason: str,
    reopen: bool,
) -> SettlementResult:
    """
    Back out of a pending sale whose payment did not go through.

    A buy-now goes back to Live so bidding continues. A settled winner who
    cannot pay ends the auction and the coupon returns to the seller.
    """
    try:
        auction = await get_auction(db, auction_id, lock=True)
        bidder_id = auction.winner_id
        if reopen:
            values = {"status": AuctionStatus.LIVE.value, "bought_now": False}
        else:
            values = {"status": AuctionStatus.ENDED.value, "settled_at": now}
        won = await _cas_auction(
            db,
            auction,
            expected=AuctionStatus.SETTLING,
            winner_id=None,
            final_price_cents=None,
            **values,
        )
        if won and not reopen:
            await ledger._transition(
                db, auction.coupon_id, to=CouponState.ACTIVE, actor_id=auction.seller_id, now=now
            )
            await log_event(
                db,
                coupon_id=auction.coupon_id,
                actor_id=None,
                event_type="auction_ended",
                meta={"auction_id": auction_id, "reason": reason, "bidder_id": bidder_id},
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if won:
        logger.warning(f"Auction {auction_id}: sale to {bidder_id} backed out ({reason})")
    result = await _recorded(db, auction_id)
    result.declined = won and not reopen and reason == "payment_declined"
    return result


async def _collect_payment(
    db: AsyncSession,
    auction: Auction,
    *,
    settlement: SettlementGateway,
    now: datetime,
) -> SettlementResult:
    """
    Charge the winner of a Settling auction, then transfer the coupon.

    Runs with no transaction open. The Settling status keeps bids and
    cancels out while the gateway is called.
    """
    auction_id, coupon_id = auction.id, auction.coupon_id
    winner_id, seller_id = auction.winner_id, auction.seller_id
    price, bought_now = auction.final_price_cents, auction.bought_now
    reference = _reference(auction)

    try:
        receipt = await settlement.charge(
            payer_id=winner_id,
            payee_id=seller_id,
            amount_cents=price,
            reference=reference,
        )
    except SettlementDeclined:
        result = await _unwind(db, auction_id, now=now, reason="payment_declined", reopen=bought_now)
        if bought_now:
            raise
        return result
    except SettlementUnavailable:
        # a settled winner stays Settling and is retried by settle_due
        if bought_now:
            await _unwind(db, auction_id, now=now, reason="settlement_unavailable", reopen=True)
        raise

    try:
        auction = await get_auction(db, auction_id, lock=True)
        won = await _cas_auction(
            db,
            auction,
            expected=AuctionStatus.SETTLING,
            status=AuctionStatus.SETTLED.value,
            settled_at=now,
            settlement_ref=receipt,
        )
        if won:
            await ledger._transfer_ownership(
                db,
                coupon_id,
                from_id=seller_id,
                to_id=winner_id,
                reason="auction_buy_now" if bought_now else "auction",
                now=now,
                reference=receipt,
            )
            coupon = await ledger._transition(db, coupon_id, to=CouponState.ACTIVE, actor_id=winner_id, now=now)
            await log_event(
                db,
                coupon_id=coupon_id,
                actor_id=winner_id if bought_now else None,
                event_type="auction_settled",
                meta={
                    "auction_id": auction_id,
                    "winner_id": winner_id,
                    "price_cents": price,
                    "buy_now": bought_now,
                    "receipt": receipt,
                },
            )
            await db.refresh(auction)
            await db.commit()
        else:
            await db.rollback()
    except Exception:
        await db.rollback()
        await compensate(settlement, receipt=receipt, reference=reference)
        await _unwind(db, auction_id, now=now, reason="settlement_failed", reopen=False)
        raise

    if not won:
        # finished by a concurrent settle carrying the same receipt
        return await _recorded(db, auction_id)

    logger.info(f"Auction {auction_id} settled: {winner_id} pays {price}c (receipt={receipt})")
    return SettlementResult(auction=auction, coupon=coupon, sold=True)


async def buy_now(
    db: AsyncSession,
    *,
    auction_id: int,
    buyer_id: str,
    settlement: SettlementGateway,
    now: datetime | None = None,
) -> Coupon:
    now = resolve_now(now)

    try:
        auction = await get_auction(db, auction_id, lock=True)
        if auction.status != AuctionStatus.LIVE.value or now >= auction.ends_at:
            raise AuctionEnded("Auction has ended")
        if auction.buy_now_price_cents is None:
            raise InvalidState("This auction has no buy-now price")
        if auction.seller_id == buyer_id:
            raise SelfPurchase("Cannot buy your own auction")

        won = await _cas_auction(
            db,
            auction,
            status=AuctionStatus.SETTLING.value,
            winner_id=buyer_id,
            final_price_cents=auction.buy_now_price_cents,
            bought_now=True,
        )
        await db.refresh(auction)
        if not won:
            raise AuctionEnded("Auction has ended")
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    result = await _collect_payment(db, auction, settlement=settlement, now=now)
    return result.coupon


async def _winning_bid(db: AsyncSession, auction_id: int) -> AuctionBid | None:
    # derived from persisted history, highest amount then earliest
    res = await db.execute(
        select(AuctionBid)
        .where(AuctionBid.auction_id == auction_id)
        .order_by(AuctionBid.amount_cents.desc(), AuctionBid.id.asc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def settle(
    db: AsyncSession,
    *,
    auction_id: int,
    settlement: SettlementGateway,
    now: datetime | None = None,
) -> SettlementResult:
    """
    Resolve an ended auction.

    Highest bid at or above reserve: the winner is fixed (Settling), charged,
    and receives the coupon (Settled). A declined charge ends the auction
    with the coupon back at the seller, as does no qualifying bid (Ended).
    An unreachable gateway leaves it Settling for a later call. Replaying
    settle on a closed auction returns the recorded outcome and changes nothing.
    """
    now = resolve_now(now)

    try:
        auction = await get_auction(db, auction_id, lock=True)

        if AuctionStatus(auction.status) in CLOSED_STATUSES:
            await db.rollback()
            return await _recorded(db, auction_id)

        if auction.status == AuctionStatus.LIVE.value:
            if now < auction.ends_at:
                raise AuctionNotEnded("Auction has not ended yet")

            top = await _winning_bid(db, auction_id)
            if top is not None and top.amount_cents >= auction.reserve_price_cents:
                won = await _cas_auction(
                    db,
                    auction,
                    status=AuctionStatus.SETTLING.value,
                    winner_id=top.bidder_id,
                    final_price_cents=top.amount_cents,
                )
            else:
                won = await _cas_auction(db, auction, status=AuctionStatus.ENDED.value, settled_at=now)
                if won:
                    await ledger._transition(
                        db, auction.coupon_id, to=CouponState.ACTIVE, actor_id=auction.seller_id, now=now
                    )
                    await log_event(
                        db,
                        coupon_id=auction.coupon_id,
                        actor_id=None,
                        event_type="auction_ended",
                        meta={
                            "auction_id": auction_id,
                            "reason": "reserve_not_met" if top is not None else "no_bids",
                            "top_bid_cents": top.amount_cents if top is not None else None,
                        },
                    )

            if not won:
                # resolved concurrently; report what the winner recorded
                await db.rollback()
                return await _recorded(db, auction_id)

        await db.refresh(auction)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if auction.status == AuctionStatus.ENDED.value:
        logger.info(f"Auction {auction_id} ended without sale, coupon back to {auction.seller_id}")
        return await _recorded(db, auction_id)

    # Settling, either just now or left over from an earlier attempt
    return await _collect_payment(db, auction, settlement=settlement, now=now)


async def cancel_auction(
    db: AsyncSession,
    *,
    auction_id: int,
    actor_id: str,
    now: datetime | None = None,
) -> Auction:
    now = resolve_now(now)

    try:
        auction = await get_auction(db, auction_id, lock=True)
        if auction.seller_id != actor_id:
            raise NotOwner("Only the seller can cancel this auction")
        if auction.status != AuctionStatus.LIVE.value:
            raise InvalidState(f"Auction is already {auction.status}")
        if auction.bid_count > 0:
            raise InvalidState("Auction already has bids and cannot be cancelled")

        won = await _cas_auction(db, auction, status=AuctionStatus.CANCELLED.value, settled_at=now)
        if not won:
            await db.refresh(auction)
            raise InvalidState("Auction changed while cancelling, retry")

        await ledger._transition(db, auction.coupon_id, to=CouponState.ACTIVE, actor_id=actor_id, now=now)
        await log_event(
            db,
            coupon_id=auction.coupon_id,
            actor_id=actor_id,
            event_type="auction_cancelled",
            meta={"auction_id": auction_id},
        )
        await db.commit()
        await db.refresh(auction)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Auction {auction_id} cancelled by seller")
    return auction


async def settle_due(
    db: AsyncSession,
    *,
    settlement: SettlementGateway,
    now: datetime | None = None,
    limit: int = 100,
) -> list[SettlementResult]:
    """Settle every ended live auction and retry pending payments. Failures stay for the next run."""
    now = resolve_now(now)
    res = await db.execute(
        select(Auction.id)
        .where(
            or_(
                and_(Auction.status == AuctionStatus.LIVE.value, Auction.ends_at <= now),
                Auction.status == AuctionStatus.SETTLING.value,
            )
        )
        .order_by(Auction.ends_at, Auction.id)
        .limit(limit)
    )
    due = list(res.scalars().all())
    await db.commit()

    results: list[SettlementResult] = []
    for auction_id in due:
        try:
            results.append(await settle(db, auction_id=auction_id, settlement=settlement, now=now))
        except MarketError as e:
            logger.warning(f"Auction {auction_id} settlement deferred: {e.code} {e.message}")
    return results
