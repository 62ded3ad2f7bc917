from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.db import get_db
from dealchain.core.deps import get_reward_client, get_settlement_gateway, require_service
from dealchain.integrations.reward_client import RewardLedgerClient
from dealchain.integrations.settlement_client import SettlementGateway
from dealchain.services import auctions, ledger
from dealchain.services.events import dispatch_events

# scheduler / operator hooks, service key only
router = APIRouter(prefix="/internal", tags=["Internal"], dependencies=[Depends(require_service)])


@router.post("/expire-sweep")
async def expire_sweep(db: AsyncSession = Depends(get_db)):
    expired = await ledger.expire_sweep(db)
    return {"expired": expired}


@router.post("/events/dispatch")
async def dispatch(
    db: AsyncSession = Depends(get_db),
    client: RewardLedgerClient = Depends(get_reward_client),
):
    delivered = await dispatch_events(db, client)
    return {"delivered": delivered}


@router.post("/auctions/settle-due")
async def settle_due(
    db: AsyncSession = Depends(get_db),
    settlement: SettlementGateway = Depends(get_settlement_gateway),
):
    results = await auctions.settle_due(db, settlement=settlement)
    return {
        "settled": [r.auction.id for r in results if r.sold],
        "ended": [r.auction.id for r in results if not r.sold],
    }
