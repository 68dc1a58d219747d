#!/usr/bin/env python3
"""
Create the schema and an active event with ticket tiers.

  DATABASE_URL=sqlite:///./boxoffice.db python seed_event.py \
      --name "Launch Party" --tier GA:3500:500 --tier VIP:6500:50:4

Tier format: NAME:PRICE_CENTS:CAPACITY[:MAX_PER_ORDER]
"""
import argparse
import asyncio
import os
import sys

from loguru import logger

from boxoffice import log
from boxoffice.infra.sql import make_async_engine, GatedAsyncSession
from boxoffice.model.catalog import TierSpec, create_event
from boxoffice.model.db import create_schema


def parse_tier(s: str) -> TierSpec:
    parts = s.split(":")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(
            f"bad tier {s!r}, want NAME:PRICE_CENTS:CAPACITY[:MAX_PER_ORDER]"
        )
    try:
        spec = TierSpec(name=parts[0], price=int(parts[1]),
                        capacity=int(parts[2]))
        if len(parts) == 4:
            spec.max_per_order = int(parts[3])
    except ValueError:
        raise argparse.ArgumentTypeError(f"bad numbers in tier {s!r}")
    return spec


async def seed(database_url: str, name: str, location: str,
               tiers: list[TierSpec]) -> None:
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        async with SessionAsync() as session:
            db = GatedAsyncSession(session=session, gated=gated)
            event, rows = await create_event(db, name, tiers,
                                             location=location)
    finally:
        await engine.dispose()

    print(f"event {event.id}  {event.name}")
    for t in rows:
        print(f"  tier {t.id}  {t.name:<12} {t.price:>7} {t.currency}"
              f"  capacity {t.capacity}")


def main():
    ap = argparse.ArgumentParser(description="Seed an event with tiers")
    ap.add_argument("--name", default="Demo Event")
    ap.add_argument("--location", default="")
    ap.add_argument("--tier", dest="tiers", action="append",
                    type=parse_tier, default=None,
                    help="NAME:PRICE_CENTS:CAPACITY[:MAX_PER_ORDER]")
    args = ap.parse_args()

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        print("NEED DATABASE_URL!")
        sys.exit(1)

    log.setup()
    tiers = args.tiers or [TierSpec(name="GA", price=3500, capacity=100)]
    asyncio.run(seed(database_url, args.name, args.location, tiers))
    logger.info("Seeded {}", args.name)


if __name__ == "__main__":
    main()
