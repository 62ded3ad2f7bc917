from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dealchain.core.clock import resolve_now
from dealchain.core.config import settings
from dealchain.models.coupon import Coupon, CouponState
from dealchain.models.promotion import Promotion
from dealchain.models.redemption_token import RedemptionToken
from dealchain.services import ledger
from dealchain.services.errors import (
    InvalidState,
    NotOwner,
    PromotionExpired,
    TokenAlreadyConsumed,
    TokenExpired,
    TokenNotFound,
)
from dealchain.services.events import log_event
from dealchain.services.promotions import is_expired


@dataclass
class IssuedToken:
    token: RedemptionToken
    qr_payload: str


def _generate_code() -> str:
    # 128 bits, url-safe so it survives QR / query-string round trips
    return secrets.token_urlsafe(16)


def _qr_payload(coupon: Coupon, token: RedemptionToken) -> str:
    return json.dumps(
        {
            "code": token.code,
            "coupon": coupon.id,
            "owner": coupon.owner_id,
            "merchant": coupon.promotion.merchant_id,
            "expires_at": token.expires_at.isoformat() + "Z",
        },
        separators=(",", ":"),
    )


async def get_outstanding_token(db: AsyncSession, *, coupon_id: int) -> RedemptionToken | None:
    res = await db.execute(
        select(RedemptionToken)
        .where(
            RedemptionToken.coupon_id == coupon_id,
            RedemptionToken.consumed.is_(False),
            RedemptionToken.superseded_at.is_(None),
        )
        .order_by(RedemptionToken.id.desc())
    )
    return res.scalars().first()


async def issue_token(
    db: AsyncSession,
    *,
    coupon_id: int,
    actor_id: str,
    window_seconds: int | None = None,
    now: datetime | None = None,
) -> IssuedToken:
    """
    Issue a short-lived one-time redemption code for an Active coupon.
    Any earlier outstanding code for the coupon is superseded first.
    """
    now = resolve_now(now)
    window = int(window_seconds or settings.REDEMPTION_WINDOW_SECONDS)

    try:
        coupon = await ledger.get_coupon(db, coupon_id, lock=True)

        if coupon.owner_id != actor_id:
            raise NotOwner("Only the coupon owner can redeem it")
        if coupon.coupon_state != CouponState.ACTIVE:
            raise InvalidState(f"Coupon is {coupon.state}; only active coupons can be redeemed")
        if is_expired(coupon.promotion, now):
            raise PromotionExpired("Promotion has expired")

        # serializes concurrent issuance on the same coupon
        await ledger._bump_version(db, coupon, now=now)

        await ledger._void_tokens(db, coupon_id, now=now, reason="reissued")

        token = RedemptionToken(
            code=_generate_code(),
            coupon_id=coupon_id,
            issued_to=actor_id,
            issued_at=now,
            expires_at=now + timedelta(seconds=window),
            consumed=False,
        )
        db.add(token)
        await db.commit()
        await db.refresh(token)
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Redemption token issued for coupon {coupon_id} (window={window}s)")
    return IssuedToken(token=token, qr_payload=_qr_payload(coupon, token))


async def refresh_token(
    db: AsyncSession,
    *,
    coupon_id: int,
    actor_id: str,
    now: datetime | None = None,
) -> IssuedToken:
    # a refresh is a reissue with a new window
    return await issue_token(db, coupon_id=coupon_id, actor_id=actor_id, now=now)


async def finalize(
    db: AsyncSession,
    *,
    code: str,
    merchant_id: str | None = None,
    now: datetime | None = None,
) -> Coupon:
    """
    Consume a redemption code: Active -> Redeemed, exactly once.

    The consumed flag is flipped with a conditional UPDATE in the same
    transaction as the coupon transition, so a double submit of the same
    code can never redeem twice.
    """
    now = resolve_now(now)

    try:
        res = await db.execute(
            select(RedemptionToken)
            .where(RedemptionToken.code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        token = res.scalar_one_or_none()

        if token is None:
            raise TokenNotFound("Redemption code not found")
        if not token.is_outstanding:
            raise TokenAlreadyConsumed("Redemption code already used or replaced")
        if token.expires_at < now:
            raise TokenExpired("Redemption code has expired, generate a new one")

        coupon = await ledger.get_coupon(db, token.coupon_id, lock=True)
        if token.issued_to != coupon.owner_id:
            raise TokenAlreadyConsumed("Redemption code was issued to a previous owner")
        if merchant_id is not None and coupon.promotion.merchant_id != merchant_id:
            raise NotOwner("Coupon belongs to a different merchant")
        if is_expired(coupon.promotion, now):
            raise PromotionExpired("Promotion has expired")

        flipped = await db.execute(
            update(RedemptionToken)
            .where(
                RedemptionToken.id == token.id,
                RedemptionToken.consumed.is_(False),
                RedemptionToken.superseded_at.is_(None),
            )
            .values(consumed=True, consumed_at=now, consumed_by=merchant_id)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            raise TokenAlreadyConsumed("Redemption code already used or replaced")

        coupon = await ledger._transition(
            db,
            token.coupon_id,
            to=CouponState.REDEEMED,
            actor_id=merchant_id,
            now=now,
            redeemed_at=now,
        )

        # downstream reward accrual hangs off this event
        await log_event(
            db,
            coupon_id=coupon.id,
            actor_id=merchant_id,
            event_type="redeemed",
            meta={
                "owner_id": coupon.owner_id,
                "promotion_id": coupon.promotion_id,
                "merchant_id": coupon.promotion.merchant_id,
                "discount_percentage": coupon.discount_percentage,
            },
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Coupon {coupon.id} redeemed (merchant={merchant_id})")
    return coupon


async def cancel_token(
    db: AsyncSession,
    *,
    coupon_id: int,
    actor_id: str,
    now: datetime | None = None,
) -> RedemptionToken:
    """Owner withdraws the outstanding code before showing it to a merchant."""
    now = resolve_now(now)

    try:
        coupon = await ledger.get_coupon(db, coupon_id, lock=True)
        if coupon.owner_id != actor_id:
            raise NotOwner("Only the coupon owner can cancel its redemption code")

        token = await get_outstanding_token(db, coupon_id=coupon_id)
        if token is None:
            raise TokenNotFound("No outstanding redemption code for this coupon")

        await ledger._void_tokens(db, coupon_id, now=now, reason="cancelled")
        await db.refresh(token)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Redemption token for coupon {coupon_id} cancelled by {actor_id}")
    return token


def _filter_status(q, status: str | None, now: datetime):
    if status == "pending":
        return q.where(
            RedemptionToken.consumed.is_(False),
            RedemptionToken.superseded_at.is_(None),
            RedemptionToken.expires_at >= now,
        )
    if status == "consumed":
        return q.where(RedemptionToken.consumed.is_(True))
    if status == "cancelled":
        return q.where(RedemptionToken.void_reason == "cancelled")
    return q


async def list_owner_tokens(
    db: AsyncSession,
    *,
    owner_id: str,
    status: str | None = None,
    now: datetime | None = None,
    limit: int = 100,
) -> list[RedemptionToken]:
    q = select(RedemptionToken).where(RedemptionToken.issued_to == owner_id)
    q = _filter_status(q, status, resolve_now(now))
    q = q.order_by(RedemptionToken.issued_at.desc(), RedemptionToken.id.desc()).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def list_merchant_tokens(
    db: AsyncSession,
    *,
    merchant_id: str,
    status: str | None = None,
    now: datetime | None = None,
    limit: int = 100,
) -> list[RedemptionToken]:
    """Codes for coupons of the merchant's promotions, newest first."""
    q = (
        select(RedemptionToken)
        .join(Coupon, Coupon.id == RedemptionToken.coupon_id)
        .join(Promotion, Promotion.id == Coupon.promotion_id)
        .where(Promotion.merchant_id == merchant_id)
    )
    q = _filter_status(q, status, resolve_now(now))
    q = q.order_by(RedemptionToken.issued_at.desc(), RedemptionToken.id.desc()).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())
