# model/catalog.py
"""Events and their ticket tiers. Used by seeding and tests, no admin CRUD."""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, List

from loguru import logger
from sqlalchemy import select, update

from ..config import DEFAULT_CURRENCY
from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession
from .db import Event, Tier, EVENT_ACTIVE
from .errors import BoxOfficeError, ErrorCode


@dataclass
class TierSpec:
    name: str
    price: int  # cents
    capacity: int
    max_per_order: int = 10
    currency: str = DEFAULT_CURRENCY
    active: bool = True
    sale_starts_at: Optional[float] = None
    sale_ends_at: Optional[float] = None


async def create_event(
    db: GatedAsyncSession,
    name: str,
    tiers: List[TierSpec],
    location: str = "",
    starts_at: Optional[float] = None,
    status: str = EVENT_ACTIVE,
) -> tuple[Event, List[Tier]]:
    now = now_ts()
    event = Event(
        id=new_id(),
        name=name,
        location=location,
        starts_at=starts_at,
        status=status,
        created_at=now,
    )
    rows = [
        Tier(
            id=new_id(),
            event_id=event.id,
            name=t.name,
            price=t.price,
            currency=t.currency,
            capacity=t.capacity,
            sold=0,
            max_per_order=t.max_per_order,
            active=t.active,
            sale_starts_at=t.sale_starts_at,
            sale_ends_at=t.sale_ends_at,
            created_at=now,
            updated_at=now,
        )
        for t in tiers
    ]
    async with db.gated():
        async with db.session.begin():
            db.session.add(event)
            await db.session.flush()
            db.session.add_all(rows)
    logger.info("Event created: {} ({}) with {} tiers",
                name, event.id, len(rows))
    return event, rows


async def set_event_status(
    db: GatedAsyncSession, event_id: str, status: str
) -> None:
    async with db.gated():
        async with db.session.begin():
            res = await db.session.execute(
                update(Event)
                .where(Event.id == event_id)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
    if not res.rowcount:
        raise BoxOfficeError(ErrorCode.EVENT_NOT_FOUND)
    logger.info("Event {} is now {}", event_id, status)


async def set_tier_active(
    db: GatedAsyncSession, tier_id: str, active: bool
) -> None:
    async with db.gated():
        async with db.session.begin():
            res = await db.session.execute(
                update(Tier)
                .where(Tier.id == tier_id)
                .values(active=active, updated_at=now_ts())
                .execution_options(synchronize_session=False)
            )
    if not res.rowcount:
        raise BoxOfficeError(ErrorCode.TIER_NOT_FOUND)


async def list_tiers(db: GatedAsyncSession, event_id: str) -> List[Tier]:
    async with db.gated():
        async with db.session.begin():
            return list((await db.session.execute(
                select(Tier)
                .where(Tier.event_id == event_id)
                .order_by(Tier.created_at.asc())
            )).scalars().all())
