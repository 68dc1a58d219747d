# model/availability.py
"""
Display-only tier availability, optionally cached in Redis.

Cached snapshots are always served with "stale": true and their "as_of" time.
Nothing on the reservation path reads from here.
"""

from __future__ import annotations
from typing import Optional, Dict, Any

import orjson
import redis.asyncio as redis
from loguru import logger

from ..config import AVAILABILITY_CACHE_TTL
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .ledger import get_tier_availability


def k_availability(tier_id: str) -> str:
    return f"availability:{tier_id}"


async def cached_availability(
    db: GatedAsyncSession,
    r: Optional[redis.Redis],
    tier_id: str,
    ttl: int = AVAILABILITY_CACHE_TTL,
) -> Dict[str, Any] | None:
    if r is not None:
        try:
            raw = await r.get(k_availability(tier_id))
        except redis.RedisError as e:
            logger.warning("Availability cache read failed: {}", e)
            raw = None
        if raw:
            snap = orjson.loads(raw)
            snap["stale"] = True
            return snap

    snap = await get_tier_availability(db, tier_id)
    if snap is None:
        return None
    as_of = now_ts()
    snap["as_of"] = to_iso(as_of)
    snap["stale"] = False

    if r is not None and ttl > 0:
        try:
            await r.set(
                k_availability(tier_id),
                orjson.dumps({**snap, "stale": True}),
                ex=ttl,
            )
        except redis.RedisError as e:
            logger.warning("Availability cache write failed: {}", e)
    return snap


async def invalidate(r: Optional[redis.Redis], tier_id: str) -> None:
    if r is None:
        return
    try:
        await r.delete(k_availability(tier_id))
    except redis.RedisError as e:
        logger.warning("Availability cache invalidate failed: {}", e)
