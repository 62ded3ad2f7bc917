"""
Tests for the settlement gateway client and reward event dispatch
"""
import httpx
import pytest

from dealchain.integrations.reward_client import RewardLedgerClient
from dealchain.integrations.settlement_client import (
    LocalSettlementGateway,
    SettlementApiClient,
    compensate,
)
from dealchain.services.errors import SettlementDeclined, SettlementUnavailable
from dealchain.services.events import dispatch_events, list_coupon_events

from tests.conftest import ALICE, FakeSettlement


def _client(handler, **kwargs) -> SettlementApiClient:
    params = {"max_attempts": 3, "backoff_seconds": 0}
    params.update(kwargs)
    return SettlementApiClient(
        base_url="https://settle.test",
        token="secret",
        transport=httpx.MockTransport(handler),
        **params,
    )


class TestSettlementApiClient:
    async def test_charge_returns_receipt(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"receipt": "tx-42"})

        receipt = await _client(handler).charge(
            payer_id="bob", payee_id="alice", amount_cents=2_500, reference="listing:1:bob"
        )

        assert receipt == "tx-42"
        assert seen[0].url.path == "/charges"
        assert seen[0].headers["Idempotency-Key"] == "listing:1:bob"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    async def test_retries_server_errors_then_succeeds(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"id": "tx-7"})

        receipt = await _client(handler).charge(payer_id="b", payee_id="a", amount_cents=1, reference="r")

        assert receipt == "tx-7"
        assert calls["n"] == 3

    async def test_exhausted_retries_are_unavailable(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(SettlementUnavailable):
            await _client(handler).charge(payer_id="b", payee_id="a", amount_cents=1, reference="r")
        assert calls["n"] == 3

    async def test_decline_is_not_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(402, json={"error": "insufficient funds"})

        with pytest.raises(SettlementDeclined):
            await _client(handler).charge(payer_id="b", payee_id="a", amount_cents=1, reference="r")
        assert calls["n"] == 1

    async def test_missing_receipt(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        with pytest.raises(SettlementUnavailable):
            await _client(handler).charge(payer_id="b", payee_id="a", amount_cents=1, reference="r")

    async def test_refund_path(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        await _client(handler).refund(receipt="tx-9", reference="auction:3")
        assert seen[0].url.path == "/charges/tx-9/refund"
        assert seen[0].headers["Idempotency-Key"] == "refund:auction:3"


async def test_local_gateway_receipt():
    receipt = await LocalSettlementGateway().charge(payer_id="b", payee_id="a", amount_cents=5, reference="x")
    assert receipt == "local:x"


async def test_compensate_only_with_receipt():
    gateway = FakeSettlement()

    await compensate(gateway, receipt=None, reference="r")
    assert gateway.refunds == []

    await compensate(gateway, receipt="rcpt-1", reference="r")
    assert gateway.refunds == [{"receipt": "rcpt-1", "reference": "r"}]


class TestRewardDispatch:
    async def test_disabled_client_sends_nothing(self, db_session, make_coupon):
        await make_coupon(ALICE)
        assert await dispatch_events(db_session, RewardLedgerClient(base_url="")) == 0

    async def test_delivers_in_order_and_marks(self, db_session, make_coupon):
        coupon_id = await make_coupon(ALICE)
        posted = []

        def handler(request: httpx.Request) -> httpx.Response:
            posted.append(request)
            return httpx.Response(202)

        client = RewardLedgerClient(base_url="https://rewards.test", transport=httpx.MockTransport(handler))

        assert await dispatch_events(db_session, client) == 1
        assert posted[0].url.path == "/events"

        events = await list_coupon_events(db_session, coupon_id=coupon_id)
        await db_session.refresh(events[0])
        assert events[0].delivered_at is not None

        # nothing left to send
        assert await dispatch_events(db_session, client) == 0

    async def test_stops_at_first_failure(self, db_session, make_coupon):
        await make_coupon(ALICE)
        await make_coupon(ALICE)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="down")

        client = RewardLedgerClient(base_url="https://rewards.test", transport=httpx.MockTransport(handler))
        assert await dispatch_events(db_session, client) == 0
