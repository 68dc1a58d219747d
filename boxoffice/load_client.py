#!/usr/bin/env python3
"""
BoxOffice contention client (async)

Fires many concurrent purchases at ONE tier and checks the ledger held:
  1) POST /api/orders  (tier_id, buyer, quantity) -> 201 | 409
  2) optionally POST /payments/webhook (signed) for each created order
  3) GET /api/tiers/{tier_id}/availability at the end

Created quantities must add up to `sold`, and `sold` must never exceed
`capacity`.

Usage:
  python -m boxoffice.load_client --tier <tier_id> --total 500 \
                                  --concurrency 100 --pay
"""

import asyncio
import random
import string
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx
import orjson

from .payments import sign, SIGNATURE_HEADER


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    outcome: str  # CREATED/SOLD_OUT/REJECTED/ERROR
    quantity: int = 0
    order_id: Optional[str] = None
    paid: bool = False
    t_create: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        created = [r for r in self.results if r.outcome == "CREATED"]
        lat = sorted(r.t_create for r in self.results if r.t_create > 0)

        def pct(p):
            if not lat:
                return 0.0
            k = int(max(0, min(len(lat)-1, round(p/100*(len(lat)-1)))))
            return lat[k]
        return {
            "total": len(self.results),
            "created": len(created),
            "created_qty": sum(r.quantity for r in created),
            "paid": sum(1 for r in created if r.paid),
            "sold_out": sum(
                1 for r in self.results if r.outcome == "SOLD_OUT"
            ),
            "rejected": sum(
                1 for r in self.results if r.outcome == "REJECTED"
            ),
            "error": sum(1 for r in self.results if r.outcome == "ERROR"),
            "p50_s": pct(50),
            "p99_s": pct(99),
        }

    def ledger_holds(self, tier: dict) -> bool:
        created_qty = self.summary()["created_qty"]
        return tier["sold"] <= tier["capacity"] and tier["sold"] == created_qty

    def print(self, elapsed_s: float, tier: Optional[dict]):
        s = self.summary()
        print("\n=== Contention Summary ===")
        print(
            f"Total: {int(s['total'])}   CREATED: {int(s['created'])} "
            f"(qty {int(s['created_qty'])}, paid {int(s['paid'])})   "
            f"SOLD_OUT: {int(s['sold_out'])}   "
            f"REJECTED: {int(s['rejected'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Create latency: p50 {s['p50_s']:.3f}s   p99 {s['p99_s']:.3f}s"
            f"   Wall time: {elapsed_s:.3f}s"
        )
        if tier:
            ok = self.ledger_holds(tier)
            print(
                f"Tier: sold {tier['sold']} / capacity {tier['capacity']}   "
                f"{'OK' if ok else 'MISMATCH'}"
            )


async def pay(client: httpx.AsyncClient, base: str, secret: str,
              order_id: str) -> bool:
    payload = orjson.dumps({
        "type": "payment.succeeded",
        "id": f"evt_{random.getrandbits(64):016x}",
        "data": {"order_id": order_id},
    })
    resp = await client.post(
        f"{base}/payments/webhook",
        content=payload,
        headers={
            SIGNATURE_HEADER: sign(payload, secret),
            "content-type": "application/json",
        },
        timeout=30.0,
    )
    return resp.status_code == 200 and resp.json().get("processed", False)


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    tier_id: str,
    quantity: int,
    secret: Optional[str],
) -> Result:
    r = Result(outcome="ERROR", quantity=quantity)
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/orders",
            json={
                "tier_id": tier_id,
                "quantity": quantity,
                "buyer_name": "Load Test",
                "buyer_email": _rand_email(),
            },
            timeout=30.0,
        )
    except Exception as e:
        r.err = f"create: {e}"
        return r
    r.t_create = time.perf_counter() - t0

    if resp.status_code == 201:
        r.outcome = "CREATED"
        r.order_id = resp.json()["order"]["id"]
    elif resp.json().get("code") == "INSUFFICIENT_INVENTORY":
        r.outcome = "SOLD_OUT"
        return r
    else:
        r.outcome = "REJECTED"
        r.err = resp.text
        return r

    if secret is not None:
        try:
            r.paid = await pay(client, base, secret, r.order_id)
        except Exception as e:
            r.err = f"pay: {e}"
    return r


async def run_load(
    base: str,
    tier_id: str,
    total: int,
    concurrency: int,
    max_qty: int,
    secret: Optional[str],
) -> tuple[Stats, Optional[dict]]:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "BoxOfficeLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                qty = random.randint(1, max_qty)
                stats.add(await one_order(client, base, tier_id, qty, secret))

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        tier = None
        g = await client.get(f"{base}/api/tiers/{tier_id}/availability")
        if g.status_code == 200:
            tier = g.json()

    return stats, tier


def main():
    ap = argparse.ArgumentParser(description="BoxOffice contention client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--tier", required=True, help="Tier id to hammer")
    ap.add_argument("--total", type=int, default=200,
                    help="Total purchase attempts")
    ap.add_argument("--concurrency", type=int, default=50,
                    help="Concurrent workers")
    ap.add_argument("--max-qty", type=int, default=1,
                    help="Random quantity per order in 1..max-qty")
    ap.add_argument("--pay", action="store_true",
                    help="Confirm each created order via signed webhook")
    ap.add_argument("--secret", default="dev-webhook-secret",
                    help="WEBHOOK_SECRET of the server")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats, tier = asyncio.run(run_load(
        base=args.base,
        tier_id=args.tier,
        total=args.total,
        concurrency=args.concurrency,
        max_qty=args.max_qty,
        secret=args.secret if args.pay else None,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed, tier)


if __name__ == "__main__":
    main()
