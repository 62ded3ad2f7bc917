from __future__ import annotations

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import utcnow
from dealchain.integrations.reward_client import RewardApiError, RewardLedgerClient
from dealchain.models.coupon_event import CouponEvent


async def log_event(
    db: AsyncSession,
    *,
    coupon_id: int,
    actor_id: str | None,
    event_type: str,
    meta: dict | None = None,
) -> CouponEvent:
    e = CouponEvent(
        coupon_id=coupon_id,
        actor_id=actor_id,
        event_type=event_type,
        meta=meta or {},
        created_at=utcnow(),
    )
    db.add(e)
    return e


async def list_coupon_events(db: AsyncSession, *, coupon_id: int) -> list[CouponEvent]:
    res = await db.execute(
        select(CouponEvent).where(CouponEvent.coupon_id == coupon_id).order_by(CouponEvent.id)
    )
    return list(res.scalars().all())


def _event_payload(e: CouponEvent) -> dict:
    return {
        "event_id": e.id,
        "coupon_id": e.coupon_id,
        "actor_id": e.actor_id,
        "event_type": e.event_type,
        "meta": e.meta or {},
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


async def dispatch_events(
    db: AsyncSession,
    client: RewardLedgerClient,
    *,
    limit: int = 100,
) -> int:
    """
    Push undelivered events to the reward ledger, oldest first.
    Stops at the first failure; remaining events stay pending for the next run.
    """
    if not client.enabled:
        return 0

    res = await db.execute(
        select(CouponEvent)
        .where(CouponEvent.delivered_at.is_(None))
        .order_by(CouponEvent.id)
        .limit(limit)
    )
    pending = list(res.scalars().all())

    delivered = 0
    for e in pending:
        try:
            await client.publish(_event_payload(e))
        except RewardApiError as exc:
            logger.warning(f"Reward dispatch stopped at event {e.id}: {exc}")
            break

        await db.execute(
            update(CouponEvent)
            .where(CouponEvent.id == e.id, CouponEvent.delivered_at.is_(None))
            .values(delivered_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        delivered += 1

    if delivered:
        logger.info(f"Dispatched {delivered} coupon events to reward ledger")
    return delivered
