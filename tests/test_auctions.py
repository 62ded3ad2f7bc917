"""
Tests for the auction engine
"""
from datetime import timedelta
from types import SimpleNamespace

import pytest

from dealchain.core.config import settings
from dealchain.models.auction import AuctionStatus
from dealchain.models.coupon import CouponState
from dealchain.services import auctions, ledger
from dealchain.services.errors import (
    AuctionEnded,
    AuctionNotEnded,
    BidTooLow,
    InvalidPrice,
    InvalidState,
    NotOwner,
    SelfBid,
    SelfPurchase,
    SettlementDeclined,
    SettlementUnavailable,
)

from tests.conftest import ALICE, BOB, CAROL, T0, FakeSettlement


HOUR = timedelta(hours=1)


async def _auction(db_session, make_coupon, **kwargs):
    coupon_id = await make_coupon(ALICE)
    params = {
        "starting_price_cents": 100,
        "reserve_price_cents": 0,
        "duration_seconds": 3600,
    }
    params.update(kwargs)
    auction = await auctions.create_auction(db_session, coupon_id=coupon_id, seller_id=ALICE, now=T0, **params)
    return coupon_id, auction.id


async def test_create_escrows_coupon(db_session, make_coupon):
    coupon_id, auction_id = await _auction(db_session, make_coupon)

    auction = await auctions.get_auction(db_session, auction_id)
    assert auction.status == AuctionStatus.LIVE.value
    assert auction.ends_at == T0 + HOUR
    assert auction.extension_seconds == settings.AUCTION_DEFAULT_EXTENSION_SECONDS

    coupon = await ledger.get_coupon(db_session, coupon_id)
    assert coupon.coupon_state == CouponState.IN_AUCTION
    assert coupon.owner_id == ALICE


async def test_create_validation(db_session, make_coupon):
    coupon_id = await make_coupon(ALICE)

    with pytest.raises(InvalidPrice):
        await auctions.create_auction(
            db_session, coupon_id=coupon_id, seller_id=ALICE, starting_price_cents=0, duration_seconds=60, now=T0
        )
    with pytest.raises(InvalidPrice):
        await auctions.create_auction(
            db_session,
            coupon_id=coupon_id,
            seller_id=ALICE,
            starting_price_cents=100,
            buy_now_price_cents=100,
            duration_seconds=60,
            now=T0,
        )
    with pytest.raises(NotOwner):
        await auctions.create_auction(
            db_session, coupon_id=coupon_id, seller_id=BOB, starting_price_cents=100, duration_seconds=60, now=T0
        )


async def test_reserve_not_met_returns_coupon_to_seller(db_session, make_coupon, settlement):
    coupon_id, auction_id = await _auction(db_session, make_coupon, reserve_price_cents=150)

    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=120, now=T0)
    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=CAROL, amount_cents=140, now=T0)

    result = await auctions.settle(db_session, auction_id=auction_id, settlement=settlement, now=T0 + 2 * HOUR)

    assert result.sold is False
    assert result.auction.status == AuctionStatus.ENDED.value
    assert result.coupon.owner_id == ALICE
    assert result.coupon.coupon_state == CouponState.ACTIVE
    assert settlement.charges == []

    history = await ledger.get_transfer_history(db_session, coupon_id=coupon_id)
    assert [h.reason for h in history] == ["claim"]


async def test_winner_takes_coupon(db_session, make_coupon, settlement):
    coupon_id, auction_id = await _auction(db_session, make_coupon, reserve_price_cents=150)

    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=150, now=T0)
    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=CAROL, amount_cents=175, now=T0)

    result = await auctions.settle(db_session, auction_id=auction_id, settlement=settlement, now=T0 + 2 * HOUR)

    assert result.sold is True
    assert result.auction.status == AuctionStatus.SETTLED.value
    assert result.auction.winner_id == CAROL
    assert result.auction.final_price_cents == 175
    assert result.coupon.owner_id == CAROL
    assert result.coupon.coupon_state == CouponState.ACTIVE
    assert settlement.charges[0]["reference"] == f"auction:{auction_id}"
    assert settlement.charges[0]["payee_id"] == ALICE

    # replay is a no-op
    again = await auctions.settle(db_session, auction_id=auction_id, settlement=settlement, now=T0 + 3 * HOUR)
    assert again.sold is True
    assert again.coupon.owner_id == CAROL
    assert len(settlement.charges) == 1

    history = await ledger.get_transfer_history(db_session, coupon_id=coupon_id)
    assert [h.reason for h in history] == ["claim", "auction"]


async def test_settle_before_end(db_session, make_coupon, settlement):
    _, auction_id = await _auction(db_session, make_coupon)

    with pytest.raises(AuctionNotEnded):
        await auctions.settle(db_session, auction_id=auction_id, settlement=settlement, now=T0 + timedelta(minutes=59))


async def test_settlement_outage_holds_winner_for_retry(
    db_session, make_coupon, settlement, unavailable_settlement
):
    coupon_id, auction_id = await _auction(db_session, make_coupon)
    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=200, now=T0)

    with pytest.raises(SettlementUnavailable):
        await auctions.settle(
            db_session, auction_id=auction_id, settlement=unavailable_settlement, now=T0 + 2 * HOUR
        )

    auction = await auctions.get_auction(db_session, auction_id)
    assert auction.status == AuctionStatus.SETTLING.value
    assert auction.winner_id == BOB
    assert (await ledger.get_coupon(db_session, coupon_id)).coupon_state == CouponState.IN_AUCTION

    # winner is fixed while payment is pending
    with pytest.raises(AuctionEnded):
        await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=CAROL, amount_cents=900, now=T0)
    with pytest.raises(InvalidState):
        await auctions.cancel_auction(db_session, auction_id=auction_id, actor_id=ALICE, now=T0)

    results = await auctions.settle_due(db_session, settlement=settlement, now=T0 + 3 * HOUR)
    assert [(r.auction.id, r.sold) for r in results] == [(auction_id, True)]
    assert results[0].coupon.owner_id == BOB
    assert settlement.charges[0]["amount_cents"] == 200


async def test_bids_strictly_increase(db_session, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon)

    with pytest.raises(BidTooLow):
        await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=50, now=T0)

    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=100, now=T0)
    with pytest.raises(BidTooLow):
        await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=CAROL, amount_cents=100, now=T0)

    auction = await auctions.place_bid(
        db_session, auction_id=auction_id, bidder_id=CAROL, amount_cents=101, now=T0
    )
    assert auction.current_bid_cents == 101
    assert auction.highest_bidder_id == CAROL
    assert auction.bid_count == 2

    bids = await auctions.list_bids(db_session, auction_id=auction_id)
    amounts = [b.amount_cents for b in bids]
    assert amounts == sorted(amounts) == [100, 101]


async def test_seller_cannot_bid(db_session, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon)

    with pytest.raises(SelfBid):
        await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=ALICE, amount_cents=500, now=T0)


async def test_bid_after_close(db_session, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon)

    with pytest.raises(AuctionEnded):
        await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=500, now=T0 + HOUR)


async def test_late_bid_extends_from_bid_time(db_session, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon, extension_seconds=60)

    bid_at = T0 + HOUR - timedelta(seconds=10)
    auction = await auctions.place_bid(
        db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=100, now=bid_at
    )

    assert auction.ends_at == bid_at + timedelta(seconds=60)
    assert auction.extension_count == 1


async def test_early_bid_does_not_extend(db_session, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon, extension_seconds=60)

    auction = await auctions.place_bid(
        db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=100, now=T0 + timedelta(minutes=30)
    )
    assert auction.ends_at == T0 + HOUR
    assert auction.extension_count == 0


async def test_extension_cap(db_session, make_coupon, monkeypatch):
    monkeypatch.setattr(settings, "MAX_AUCTION_EXTENSIONS", 1)
    _, auction_id = await _auction(db_session, make_coupon, extension_seconds=60)

    first = T0 + HOUR - timedelta(seconds=10)
    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=100, now=first)

    second = first + timedelta(seconds=55)
    auction = await auctions.place_bid(
        db_session, auction_id=auction_id, bidder_id=CAROL, amount_cents=110, now=second
    )
    assert auction.ends_at == first + timedelta(seconds=60)
    assert auction.extension_count == 1


async def test_stale_bid_snapshot_loses(db_session, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon)
    auction = await auctions.get_auction(db_session, auction_id)
    snapshot = SimpleNamespace(id=auction.id, version=auction.version)

    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=100, now=T0)

    assert not await auctions._cas_auction(db_session, snapshot, current_bid_cents=100, highest_bidder_id=CAROL)
    await db_session.rollback()

    auction = await auctions.get_auction(db_session, auction_id)
    assert auction.highest_bidder_id == BOB


async def test_buy_now(db_session, make_coupon, settlement):
    coupon_id, auction_id = await _auction(db_session, make_coupon, buy_now_price_cents=500)
    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=100, now=T0)

    coupon = await auctions.buy_now(db_session, auction_id=auction_id, buyer_id=CAROL, settlement=settlement, now=T0)
    assert coupon.owner_id == CAROL
    assert coupon.coupon_state == CouponState.ACTIVE
    assert settlement.charges[0]["amount_cents"] == 500
    assert settlement.charges[0]["reference"] == f"auction:{auction_id}:buy_now:{CAROL}"

    auction = await auctions.get_auction(db_session, auction_id)
    assert auction.status == AuctionStatus.SETTLED.value
    assert auction.winner_id == CAROL

    with pytest.raises(AuctionEnded):
        await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=600, now=T0)


async def test_cancel_without_bids(db_session, make_coupon):
    coupon_id, auction_id = await _auction(db_session, make_coupon)

    with pytest.raises(NotOwner):
        await auctions.cancel_auction(db_session, auction_id=auction_id, actor_id=BOB, now=T0)

    auction = await auctions.cancel_auction(db_session, auction_id=auction_id, actor_id=ALICE, now=T0)
    assert auction.status == AuctionStatus.CANCELLED.value
    assert (await ledger.get_coupon(db_session, coupon_id)).coupon_state == CouponState.ACTIVE


async def test_cancel_with_bids_rejected(db_session, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon)
    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=100, now=T0)

    with pytest.raises(InvalidState):
        await auctions.cancel_auction(db_session, auction_id=auction_id, actor_id=ALICE, now=T0)


async def test_view_status_ending_soon(db_session, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon, duration_seconds=4 * 3600)
    auction = await auctions.get_auction(db_session, auction_id)

    assert auctions.view_status(auction, T0) == AuctionStatus.LIVE
    assert auctions.view_status(auction, T0 + timedelta(hours=3, minutes=45)) == AuctionStatus.ENDING_SOON


async def test_settle_due(db_session, make_coupon, settlement):
    _, sold_id = await _auction(db_session, make_coupon)
    _, unsold_id = await _auction(db_session, make_coupon)
    _, open_id = await _auction(db_session, make_coupon, duration_seconds=10 * 3600)
    await auctions.place_bid(db_session, auction_id=sold_id, bidder_id=BOB, amount_cents=100, now=T0)

    results = await auctions.settle_due(db_session, settlement=settlement, now=T0 + 2 * HOUR)

    assert {(r.auction.id, r.sold) for r in results} == {(sold_id, True), (unsold_id, False)}
    assert (await auctions.get_auction(db_session, open_id)).status == AuctionStatus.LIVE.value


async def test_declined_winner_ends_auction(db_session, make_coupon, declining_settlement, settlement):
    coupon_id, auction_id = await _auction(db_session, make_coupon)
    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=200, now=T0)

    result = await auctions.settle(
        db_session, auction_id=auction_id, settlement=declining_settlement, now=T0 + 2 * HOUR
    )

    assert result.sold is False
    assert result.declined is True
    assert result.auction.status == AuctionStatus.ENDED.value
    assert result.auction.winner_id is None
    assert result.coupon.owner_id == ALICE
    assert result.coupon.coupon_state == CouponState.ACTIVE

    # nothing left to settle, and a replay reports the same outcome
    assert await auctions.settle_due(db_session, settlement=settlement, now=T0 + 3 * HOUR) == []
    again = await auctions.settle(db_session, auction_id=auction_id, settlement=settlement, now=T0 + 3 * HOUR)
    assert again.sold is False
    assert again.auction.status == AuctionStatus.ENDED.value
    assert settlement.charges == []

    history = await ledger.get_transfer_history(db_session, coupon_id=coupon_id)
    assert [h.reason for h in history] == ["claim"]


async def test_settle_charges_outside_the_transaction(db_session, session_maker, make_coupon):
    coupon_id, auction_id = await _auction(db_session, make_coupon)
    await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=200, now=T0)
    seen = {}

    async def during_charge(reference):
        seen["in_transaction"] = db_session.in_transaction()
        async with session_maker() as other:
            seen["status"] = (await auctions.get_auction(other, auction_id)).status
            with pytest.raises(AuctionEnded):
                await auctions.place_bid(other, auction_id=auction_id, bidder_id=CAROL, amount_cents=900, now=T0)

    gateway = FakeSettlement(on_charge=during_charge)
    result = await auctions.settle(db_session, auction_id=auction_id, settlement=gateway, now=T0 + 2 * HOUR)

    assert seen == {"in_transaction": False, "status": AuctionStatus.SETTLING.value}
    assert result.sold is True
    assert result.coupon.owner_id == BOB


async def test_buy_now_charges_outside_the_transaction(db_session, session_maker, make_coupon):
    _, auction_id = await _auction(db_session, make_coupon, buy_now_price_cents=500)
    seen = {}

    async def during_charge(reference):
        seen["in_transaction"] = db_session.in_transaction()
        async with session_maker() as other:
            with pytest.raises(AuctionEnded):
                await auctions.buy_now(
                    other, auction_id=auction_id, buyer_id=BOB, settlement=FakeSettlement(), now=T0
                )

    gateway = FakeSettlement(on_charge=during_charge)
    coupon = await auctions.buy_now(db_session, auction_id=auction_id, buyer_id=CAROL, settlement=gateway, now=T0)

    assert seen == {"in_transaction": False}
    assert coupon.owner_id == CAROL
    assert len(gateway.charges) == 1


@pytest.mark.parametrize(
    "error", [SettlementDeclined("insufficient funds"), SettlementUnavailable("down")], ids=["declined", "outage"]
)
async def test_failed_buy_now_reopens_bidding(db_session, make_coupon, error):
    coupon_id, auction_id = await _auction(db_session, make_coupon, buy_now_price_cents=500)

    with pytest.raises(type(error)):
        await auctions.buy_now(
            db_session, auction_id=auction_id, buyer_id=CAROL, settlement=FakeSettlement(fail_with=error), now=T0
        )

    auction = await auctions.get_auction(db_session, auction_id)
    assert auction.status == AuctionStatus.LIVE.value
    assert auction.bought_now is False
    assert auction.winner_id is None
    assert (await ledger.get_coupon(db_session, coupon_id)).coupon_state == CouponState.IN_AUCTION

    auction = await auctions.place_bid(db_session, auction_id=auction_id, bidder_id=BOB, amount_cents=150, now=T0)
    assert auction.highest_bidder_id == BOB


async def test_buy_now_rules(db_session, make_coupon, settlement):
    _, plain_id = await _auction(db_session, make_coupon)
    _, auction_id = await _auction(db_session, make_coupon, buy_now_price_cents=500)

    with pytest.raises(InvalidState):
        await auctions.buy_now(db_session, auction_id=plain_id, buyer_id=BOB, settlement=settlement, now=T0)
    with pytest.raises(SelfPurchase):
        await auctions.buy_now(db_session, auction_id=auction_id, buyer_id=ALICE, settlement=settlement, now=T0)
    with pytest.raises(AuctionEnded):
        await auctions.buy_now(db_session, auction_id=auction_id, buyer_id=BOB, settlement=settlement, now=T0 + HOUR)
    assert settlement.charges == []
