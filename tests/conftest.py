"""
Pytest configuration and fixtures for DealChain tests
"""
import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")

from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import dealchain.models  # noqa: F401
from dealchain.core.db import Base
from dealchain.services import ledger
from dealchain.services.errors import SettlementDeclined, SettlementUnavailable
from dealchain.services.promotions import create_promotion


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 3, 1, 12, 0, 0)

MERCHANT = "merchant-1"
ALICE = "alice"
BOB = "bob"
CAROL = "carol"


class FakeSettlement:
    """Records charges and refunds; can be told to fail."""

    def __init__(self, fail_with: Exception | None = None, on_charge=None):
        self.fail_with = fail_with
        self.on_charge = on_charge
        self.charges: list[dict] = []
        self.refunds: list[dict] = []

    async def charge(self, *, payer_id: str, payee_id: str, amount_cents: int, reference: str) -> str:
        if self.on_charge is not None:
            await self.on_charge(reference)
        if self.fail_with is not None:
            raise self.fail_with
        self.charges.append(
            {"payer_id": payer_id, "payee_id": payee_id, "amount_cents": amount_cents, "reference": reference}
        )
        return f"rcpt-{len(self.charges)}"

    async def refund(self, *, receipt: str, reference: str) -> None:
        self.refunds.append({"receipt": receipt, "reference": reference})


@pytest.fixture(scope="function")
async def test_db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine):
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settlement() -> FakeSettlement:
    return FakeSettlement()


@pytest.fixture
def unavailable_settlement() -> FakeSettlement:
    return FakeSettlement(fail_with=SettlementUnavailable("down"))


@pytest.fixture
def declining_settlement() -> FakeSettlement:
    return FakeSettlement(fail_with=SettlementDeclined("insufficient funds"))


@pytest.fixture
def make_promotion(db_session):
    """Create a promotion; returns its id."""

    async def _make(
        *,
        max_supply: int = 10,
        discount_percentage: float = 20.0,
        original_price_cents: int = 10_000,
        expires_in: timedelta = timedelta(days=365),
        merchant_id: str = MERCHANT,
    ) -> int:
        promo = await create_promotion(
            db_session,
            merchant_id=merchant_id,
            title="Half price ramen",
            discount_percentage=discount_percentage,
            original_price_cents=original_price_cents,
            max_supply=max_supply,
            expires_at=T0 + expires_in,
            now=T0,
        )
        return promo.id

    return _make


@pytest.fixture
def make_coupon(db_session, make_promotion):
    """Claim a fresh coupon for `owner`; returns its id."""

    async def _make(owner: str = ALICE, *, promotion_id: int | None = None, **promo_kwargs) -> int:
        if promotion_id is None:
            promotion_id = await make_promotion(**promo_kwargs)
        coupon = await ledger.claim(db_session, promotion_id=promotion_id, user_id=owner, now=T0)
        return coupon.id

    return _make
