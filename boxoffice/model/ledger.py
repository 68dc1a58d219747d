# model/ledger.py
"""
Capacity ledger: per-tier (capacity, sold) counters.

- reserve: lock the tier row, recompute available under the lock, then bump
  `sold`. This ordering is the only oversell defense.
- release: decrement `sold`, floored at zero.

Both MUST run inside the caller's unit of work (the `...within_transaction`
functions never begin or commit).
"""

from __future__ import annotations
from typing import Dict, Any

from loguru import logger
from sqlalchemy import select, update, case
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import Tier
from .errors import BoxOfficeError, ErrorCode
from ..infra.sql import GatedAsyncSession


async def lock_tier(session: AsyncSession, tier_id: str) -> Tier | None:
    stmt = (
        select(Tier)
        .where(Tier.id == tier_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def reserve_within_transaction(
    session: AsyncSession, tier_id: str, quantity: int
) -> Tier:
    """
    Returns the locked tier with `sold` already incremented.
    Raises TIER_NOT_FOUND / INSUFFICIENT_INVENTORY, which aborts the
    enclosing unit of work.
    """
    tier = await lock_tier(session, tier_id)
    if tier is None:
        logger.warning("Tier not found for reservation: {}", tier_id)
        raise BoxOfficeError(ErrorCode.TIER_NOT_FOUND)

    available = tier.capacity - tier.sold
    if available < quantity:
        logger.warning(
            "Insufficient inventory: tier={} requested={} available={}",
            tier_id, quantity, available,
        )
        raise BoxOfficeError(
            ErrorCode.INSUFFICIENT_INVENTORY, available=max(0, available)
        )

    tier.sold = tier.sold + quantity
    tier.updated_at = now_ts()
    await session.flush()
    logger.info(
        "Inventory reserved: tier={} qty={} sold={}/{}",
        tier_id, quantity, tier.sold, tier.capacity,
    )
    return tier


async def release_within_transaction(
    session: AsyncSession, tier_id: str, quantity: int
) -> None:
    """
    Idempotent only because the order state machine calls it at most once per
    cancel/refund transition.
    """
    remaining = Tier.sold - quantity
    await session.execute(
        update(Tier)
        .where(Tier.id == tier_id)
        .values(
            sold=case((remaining < 0, 0), else_=remaining),
            updated_at=now_ts(),
        )
        .execution_options(synchronize_session=False)
    )
    logger.info("Inventory released: tier={} qty={}", tier_id, quantity)


# ------------------------------------------------------------------------------
# Read APIs (non-locking; display only, never used for reservation decisions)
# ------------------------------------------------------------------------------

def tier_snapshot(tier: Tier) -> Dict[str, Any]:
    available = max(0, tier.capacity - tier.sold)
    return {
        "tier_id": tier.id,
        "event_id": tier.event_id,
        "name": tier.name,
        "price": tier.price,
        "currency": tier.currency,
        "capacity": tier.capacity,
        "sold": tier.sold,
        "available": available,
        "sold_out": available <= 0,
        "active": tier.active,
        "max_per_order": tier.max_per_order,
        "sale_starts_at": tier.sale_starts_at,
        "sale_ends_at": tier.sale_ends_at,
    }


async def get_tier_availability(
    db: GatedAsyncSession, tier_id: str
) -> Dict[str, Any] | None:
    async with db.gated():
        async with db.session.begin():
            tier = (await db.session.execute(
                select(Tier)
                .where(Tier.id == tier_id)
                .execution_options(populate_existing=True)
            )).scalar_one_or_none()
    if tier is None:
        return None
    return tier_snapshot(tier)
