import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import dealchain.models  # noqa: F401

from dealchain.core.config import settings
from dealchain.core.db import AsyncSessionLocal, create_all
from dealchain.core.deps import get_reward_client, get_settlement_gateway
from dealchain.core.logging import setup_logging
from dealchain.services import auctions, ledger
from dealchain.services.events import dispatch_events

# Routers
from dealchain.routers.promotions import router as promotions_router
from dealchain.routers.coupons import router as coupons_router
from dealchain.routers.redemptions import router as redemptions_router
from dealchain.routers.listings import router as listings_router
from dealchain.routers.auctions import router as auctions_router
from dealchain.routers.staking import router as staking_router
from dealchain.routers.group_deals import router as group_deals_router
from dealchain.routers.internal import router as internal_router


async def run_maintenance_once() -> None:
    """Expire lapsed coupons, settle due auctions, flush the event outbox."""
    async with AsyncSessionLocal() as db:
        await ledger.expire_sweep(db)
        await auctions.settle_due(db, settlement=get_settlement_gateway())
        await dispatch_events(db, get_reward_client())


async def _maintenance_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_maintenance_once()
        except Exception:
            # keep the loop alive; the next tick retries
            logger.exception("Maintenance pass failed")


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()

    if settings.CREATE_TABLES_ON_STARTUP:
        await create_all()
        logger.info("Database tables ensured")

    task = None
    if settings.EXPIRE_SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_maintenance_loop(settings.EXPIRE_SWEEP_INTERVAL_SECONDS))
        logger.info(f"Maintenance loop every {settings.EXPIRE_SWEEP_INTERVAL_SECONDS}s")

    yield

    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(title="DealChain", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Catalog & ledger
app.include_router(promotions_router)
app.include_router(coupons_router)

# Redemption
app.include_router(redemptions_router)

# Marketplace
app.include_router(listings_router)
app.include_router(auctions_router)

# Yield & group pricing
app.include_router(staking_router)
app.include_router(group_deals_router)

# Scheduler hooks
app.include_router(internal_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
