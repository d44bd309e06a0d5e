#!/usr/bin/env python3
"""
boxoffice load client (async)

Races many buyers for one ticket type against a running server that uses
the mock payment provider:
  1) POST /api/orders                 -> {orderId}
  2) POST /mockpay/{orderId}/emit      (t=captured|failed)
  3) Poll GET /api/orders/{orderId} until the status is final
Afterwards it reads /api/inventory and checks the books: stock sold must
equal the tickets of PAID orders and never exceed the starting stock.

Usage:
  python -m boxoffice.load_client --base http://localhost:8000 \
                                  --ticket-type VIP --total 200 --quantity 2

Notes:
- The server must run with PAYMENT_PROVIDER=mock and MOCK_WEBHOOK_URL
  pointing back at itself.
"""

import argparse
import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

FINAL = ("PAID", "FAILED", "OVERSOLD_ERROR", "ERROR")


def _rand_phone() -> str:
    return random.choice("6789") + "".join(random.choices("0123456789", k=9))


@dataclass
class Result:
    ok: bool
    outcome: str  # PAID/FAILED/OVERSOLD_ERROR/ERROR/SOLD_OUT/TIMEOUT/CLIENT
    quantity: int
    t_observed: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def paid_units(self) -> int:
        return sum(r.quantity for r in self.results if r.outcome == "PAID")

    def summary(self) -> Dict[str, float]:
        lat = sorted(r.t_observed for r in self.results if r.t_observed > 0)

        def pct(p):
            if not lat:
                return 0.0
            k = int(max(0, min(len(lat)-1, round(p/100*(len(lat)-1)))))
            return lat[k]
        out: Dict[str, float] = {"total": len(self.results)}
        for o in FINAL + ("SOLD_OUT", "TIMEOUT", "CLIENT"):
            out[o] = self.count(o)
        out.update(p50_s=pct(50), p99_s=pct(99))
        return out


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    ticket_type: str,
    quantity: int,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="CLIENT", quantity=quantity)

    # 1) create order (soft check happens here)
    try:
        resp = await client.post(
            f"{base}/api/orders",
            json={
                "name": "Load Buyer",
                "phone": _rand_phone(),
                "ticketType": ticket_type,
                "quantity": quantity,
                "amount": 100 * quantity,
            },
            timeout=30.0,
        )
        if resp.status_code == 409:
            r.ok, r.outcome = True, "SOLD_OUT"
            return r
        resp.raise_for_status()
        order_id = resp.json()["orderId"]
    except httpx.HTTPError as e:
        r.err = f"create: {e}"
        return r

    # 2) payment outcome
    try:
        resp = await client.post(
            f"{base}/mockpay/{order_id}/emit",
            data={"t": emit_kind},
            timeout=30.0,
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r

    # 3) wait for a final status
    t0 = time.perf_counter()
    deadline = t0 + poll_timeout_s
    status = "CREATED"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(f"{base}/api/orders/{order_id}",
                                 timeout=10.0)
            if g.status_code == 200:
                status = g.json().get("status", status)
                if status in FINAL:
                    break
            await asyncio.sleep(poll_interval_s)
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t0
    r.ok = True
    r.outcome = status if status in FINAL else "TIMEOUT"
    return r


async def run_load(
    base: str,
    ticket_type: str,
    total: int,
    quantity: int,
    concurrency: int,
    fail_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> tuple[Stats, dict, dict]:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "boxoffice-load/1.0"}
    ) as client:
        before = (await client.get(f"{base}/api/inventory")).json()

        async def worker(n: int):
            async with sem:
                kind = "failed" if random.random() < fail_rate else "captured"
                res = await one_order(
                    client, base, ticket_type, quantity, kind,
                    poll_interval_s, poll_timeout_s
                )
                stats.add(res)

        await asyncio.gather(*(worker(i) for i in range(total)))
        after = (await client.get(f"{base}/api/inventory")).json()

    return stats, before.get(ticket_type, {}), after.get(ticket_type, {})


def check_books(stats: Stats, before: dict, after: dict) -> List[str]:
    problems = []
    sold = after.get("sold", 0) - before.get("sold", 0)
    if sold != stats.paid_units():
        problems.append(
            f"sold delta {sold} != tickets in PAID orders "
            f"{stats.paid_units()}"
        )
    if after.get("available", 0) < 0:
        problems.append(f"available went negative: {after['available']}")
    if sold > before.get("available", 0):
        problems.append(
            f"oversold: {sold} sold from {before.get('available', 0)}"
        )
    return problems


def main():
    ap = argparse.ArgumentParser(description="boxoffice load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--ticket-type", default="VIP")
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to run")
    ap.add_argument("--quantity", type=int, default=1,
                    help="Tickets per order")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent buyers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments that fail")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for a final status")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats, before, after = asyncio.run(run_load(
        base=args.base,
        ticket_type=args.ticket_type,
        total=args.total,
        quantity=args.quantity,
        concurrency=args.concurrency,
        fail_rate=args.fail_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start

    s = stats.summary()
    print("\n=== Load Summary ===")
    print("   ".join(f"{k}: {int(v)}" for k, v in s.items()
                     if not k.endswith("_s")))
    print(f"Latency: p50 {s['p50_s']:.3f}s   p99 {s['p99_s']:.3f}s   "
          f"Wall time: {elapsed:.3f}s")
    print(f"Inventory {args.ticket_type}: before {before}  after {after}")

    problems = check_books(stats, before, after)
    for p in problems:
        print(f"!! {p}")
    if not problems:
        print("books balance")
    raise SystemExit(1 if problems else 0)


if __name__ == "__main__":
    main()
