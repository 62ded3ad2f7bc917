"""
Tests for resale listings and atomic purchase
"""
from datetime import timedelta

import pytest

from dealchain.models.coupon import CouponState
from dealchain.services import ledger, listings
from dealchain.services.errors import (
    InvalidPrice,
    InvalidState,
    ListingNotActive,
    NotOwner,
    PromotionExpired,
    SelfPurchase,
    SettlementDeclined,
    SettlementUnavailable,
)

from tests.conftest import ALICE, BOB, CAROL, T0, FakeSettlement


async def _listed(db_session, make_coupon, price_cents=2_500, **kwargs):
    coupon_id = await make_coupon(ALICE, **kwargs)
    listing = await listings.create_listing(
        db_session, coupon_id=coupon_id, seller_id=ALICE, price_cents=price_cents, now=T0
    )
    return coupon_id, listing.id


async def test_create_listing_moves_coupon_to_listed(db_session, make_coupon):
    coupon_id, listing_id = await _listed(db_session, make_coupon)

    coupon = await ledger.get_coupon(db_session, coupon_id)
    assert coupon.coupon_state == CouponState.LISTED

    active = await listings.list_active_listings(db_session)
    assert [lst.id for lst in active] == [listing_id]


async def test_create_listing_validation(db_session, make_coupon):
    coupon_id = await make_coupon(ALICE)

    with pytest.raises(InvalidPrice):
        await listings.create_listing(db_session, coupon_id=coupon_id, seller_id=ALICE, price_cents=0, now=T0)
    with pytest.raises(NotOwner):
        await listings.create_listing(db_session, coupon_id=coupon_id, seller_id=BOB, price_cents=100, now=T0)

    await listings.create_listing(db_session, coupon_id=coupon_id, seller_id=ALICE, price_cents=100, now=T0)
    with pytest.raises(InvalidState):
        await listings.create_listing(db_session, coupon_id=coupon_id, seller_id=ALICE, price_cents=100, now=T0)


async def test_buy_transfers_ownership(db_session, make_coupon, settlement):
    coupon_id, listing_id = await _listed(db_session, make_coupon)

    coupon = await listings.buy(db_session, listing_id=listing_id, buyer_id=BOB, settlement=settlement, now=T0)

    assert coupon.owner_id == BOB
    assert coupon.coupon_state == CouponState.ACTIVE
    assert settlement.charges == [
        {
            "payer_id": BOB,
            "payee_id": ALICE,
            "amount_cents": 2_500,
            "reference": f"listing:{listing_id}:{BOB}",
        }
    ]

    listing = await listings.get_listing(db_session, listing_id)
    assert listing.is_active is False
    assert listing.close_reason == "sold"
    assert listing.buyer_id == BOB
    assert listing.settlement_ref == "rcpt-1"

    history = await ledger.get_transfer_history(db_session, coupon_id=coupon_id)
    assert (history[-1].from_id, history[-1].to_id, history[-1].reason) == (ALICE, BOB, "sale")
    assert history[-1].reference == "rcpt-1"


async def test_second_buyer_loses(db_session, make_coupon, settlement):
    _, listing_id = await _listed(db_session, make_coupon)

    await listings.buy(db_session, listing_id=listing_id, buyer_id=BOB, settlement=settlement, now=T0)
    with pytest.raises(ListingNotActive):
        await listings.buy(db_session, listing_id=listing_id, buyer_id=CAROL, settlement=settlement, now=T0)

    assert len(settlement.charges) == 1


async def test_cannot_buy_own_listing(db_session, make_coupon, settlement):
    _, listing_id = await _listed(db_session, make_coupon)

    with pytest.raises(SelfPurchase):
        await listings.buy(db_session, listing_id=listing_id, buyer_id=ALICE, settlement=settlement, now=T0)


@pytest.mark.parametrize("gateway", ["unavailable_settlement", "declining_settlement"])
async def test_failed_payment_changes_nothing(db_session, make_coupon, gateway, request):
    gateway = request.getfixturevalue(gateway)
    coupon_id, listing_id = await _listed(db_session, make_coupon)

    with pytest.raises((SettlementUnavailable, SettlementDeclined)):
        await listings.buy(db_session, listing_id=listing_id, buyer_id=BOB, settlement=gateway, now=T0)

    coupon = await ledger.get_coupon(db_session, coupon_id)
    assert coupon.owner_id == ALICE
    assert coupon.coupon_state == CouponState.LISTED

    listing = await listings.get_listing(db_session, listing_id)
    assert listing.is_active is True
    assert listing.close_reason is None
    assert listing.buyer_id is None
    assert gateway.refunds == []

    # back on the market for anyone else
    coupon = await listings.buy(
        db_session, listing_id=listing_id, buyer_id=CAROL, settlement=FakeSettlement(), now=T0
    )
    assert coupon.owner_id == CAROL


async def test_buy_on_lapsed_promotion(db_session, make_coupon, settlement):
    _, listing_id = await _listed(db_session, make_coupon, expires_in=timedelta(hours=1))

    with pytest.raises(PromotionExpired):
        await listings.buy(
            db_session, listing_id=listing_id, buyer_id=BOB, settlement=settlement, now=T0 + timedelta(hours=2)
        )
    assert settlement.charges == []


async def test_cancel_listing(db_session, make_coupon):
    coupon_id, listing_id = await _listed(db_session, make_coupon)

    with pytest.raises(NotOwner):
        await listings.cancel_listing(db_session, listing_id=listing_id, actor_id=BOB, now=T0)

    listing = await listings.cancel_listing(db_session, listing_id=listing_id, actor_id=ALICE, now=T0)
    assert listing.is_active is False
    assert listing.close_reason == "cancelled"
    assert (await ledger.get_coupon(db_session, coupon_id)).coupon_state == CouponState.ACTIVE

    with pytest.raises(ListingNotActive):
        await listings.cancel_listing(db_session, listing_id=listing_id, actor_id=ALICE, now=T0)


async def test_reprice(db_session, make_coupon):
    _, listing_id = await _listed(db_session, make_coupon)

    listing = await listings.update_listing_price(
        db_session, listing_id=listing_id, actor_id=ALICE, price_cents=1_999
    )
    assert listing.price_cents == 1_999

    with pytest.raises(NotOwner):
        await listings.update_listing_price(db_session, listing_id=listing_id, actor_id=BOB, price_cents=1)
    with pytest.raises(InvalidPrice):
        await listings.update_listing_price(db_session, listing_id=listing_id, actor_id=ALICE, price_cents=0)


async def test_charge_runs_outside_the_transaction(db_session, session_maker, make_coupon):
    coupon_id, listing_id = await _listed(db_session, make_coupon)
    seen = {}

    async def during_charge(reference):
        seen["in_transaction"] = db_session.in_transaction()
        async with session_maker() as other:
            listing = await listings.get_listing(other, listing_id)
            seen["close_reason"] = listing.close_reason
            seen["buyer_id"] = listing.buyer_id
            with pytest.raises(ListingNotActive):
                await listings.buy(other, listing_id=listing_id, buyer_id=CAROL, settlement=FakeSettlement(), now=T0)
            with pytest.raises(ListingNotActive):
                await listings.cancel_listing(other, listing_id=listing_id, actor_id=ALICE, now=T0)

    gateway = FakeSettlement(on_charge=during_charge)
    coupon = await listings.buy(db_session, listing_id=listing_id, buyer_id=BOB, settlement=gateway, now=T0)

    assert seen == {"in_transaction": False, "close_reason": listings.PENDING_SALE, "buyer_id": BOB}
    assert coupon.owner_id == BOB
    assert (await listings.get_listing(db_session, listing_id)).close_reason == "sold"


async def test_failed_transfer_is_refunded(db_session, session_maker, make_coupon):
    coupon_id, listing_id = await _listed(db_session, make_coupon, expires_in=timedelta(hours=1))

    async def expire_meanwhile(reference):
        async with session_maker() as other:
            assert await ledger.expire_sweep(other, now=T0 + timedelta(hours=2)) == 1

    gateway = FakeSettlement(on_charge=expire_meanwhile)
    with pytest.raises(InvalidState):
        await listings.buy(db_session, listing_id=listing_id, buyer_id=BOB, settlement=gateway, now=T0)

    assert gateway.refunds == [{"receipt": "rcpt-1", "reference": f"listing:{listing_id}:{BOB}"}]

    coupon = await ledger.get_coupon(db_session, coupon_id)
    assert coupon.owner_id == ALICE
    assert coupon.coupon_state == CouponState.EXPIRED

    listing = await listings.get_listing(db_session, listing_id)
    assert listing.is_active is False
    assert listing.close_reason == "expired"


async def test_same_buyer_resumes_pending_purchase(db_session, make_coupon, settlement):
    _, listing_id = await _listed(db_session, make_coupon)
    await listings._reserve_purchase(db_session, listing_id=listing_id, buyer_id=BOB, now=T0)

    with pytest.raises(ListingNotActive):
        await listings.buy(db_session, listing_id=listing_id, buyer_id=CAROL, settlement=settlement, now=T0)

    coupon = await listings.buy(db_session, listing_id=listing_id, buyer_id=BOB, settlement=settlement, now=T0)
    assert coupon.owner_id == BOB
    assert [c["payer_id"] for c in settlement.charges] == [BOB]
