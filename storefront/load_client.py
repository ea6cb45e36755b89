#!/usr/bin/env python3
"""
Storefront load / replay client (async)

Simulates the browser + provider flow against a server running with
PAYMENT_PROVIDER=mock:
  1) POST /api/checkout  (items, payerEmail) -> {invoice_url, external_id}
  2) Extract invoice id from invoice_url (.../mockpay/{invoice_id})
  3) POST /mockpay/{invoice_id}/emit?status=PAID|EXPIRED|CANCELLED&repeat=N
     (repeat > 1 replays the same callback, like at-least-once delivery)
  4) Poll GET /api/payment-status?transaction_id=... until status != PENDING

It records timings per order and prints an aggregate report.

Usage:
  python -m storefront.load_client --base http://localhost:8000 \
                                   --total 200 --concurrency 50 --repeat 3
"""

import asyncio
import logging
import random
import string
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

logger = logging.getLogger("storefront.load_client")

FINAL = ("SUCCESS", "EXPIRED", "FAILED")
EXPECTED = {"PAID": "SUCCESS", "EXPIRED": "EXPIRED", "CANCELLED": "FAILED"}

CATALOG = [
    {"productId": "P-001", "name": "Kopi Arabika 250g", "price": 55000},
    {"productId": "P-002", "name": "Teh Melati 100g", "price": 30000},
    {"productId": "P-003", "name": "Gula Aren 500g", "price": 42000},
]


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


def _rand_cart() -> List[Dict]:
    picks = random.sample(CATALOG, k=random.randint(1, len(CATALOG)))
    return [dict(p, quantity=random.randint(1, 3)) for p in picks]


def invoice_id_from_url(invoice_url: str) -> Optional[str]:
    # .../mockpay/{invoice_id}
    parts = invoice_url.rstrip("/").split("/")
    if len(parts) >= 2 and parts[-2] == "mockpay" and parts[-1]:
        return parts[-1]
    return None


@dataclass
class Result:
    ok: bool
    emitted: str
    outcome: str  # SUCCESS/EXPIRED/FAILED/TIMEOUT/ERROR
    t_checkout: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until non-PENDING observed
    err: Optional[str] = None

    @property
    def consistent(self) -> bool:
        return self.outcome == EXPECTED.get(self.emitted)


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        done = [r for r in self.results if r.outcome in FINAL]
        lat = [r.t_observed for r in done if r.t_observed > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "success": sum(1 for r in done if r.outcome == "SUCCESS"),
            "expired": sum(1 for r in done if r.outcome == "EXPIRED"),
            "failed": sum(1 for r in done if r.outcome == "FAILED"),
            "timeout": sum(1 for r in self.results if r.outcome == "TIMEOUT"),
            "error": sum(1 for r in self.results if r.outcome == "ERROR"),
            "mismatch": sum(1 for r in done if not r.consistent),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"SUCCESS: {int(s['success'])}   EXPIRED: {int(s['expired'])}   "
            f"FAILED: {int(s['failed'])}   TIMEOUT: {int(s['timeout'])}   "
            f"ERROR: {int(s['error'])}   MISMATCH: {int(s['mismatch'])}"
        )
        print(
            f"Latency (observed payment resolution): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        if elapsed_s > 0:
            print(
                f"Wall time: {elapsed_s:.3f}s   "
                f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
            )


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    emit_status: str,
    repeat: int,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, emitted=emit_status, outcome="ERROR")

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/checkout",
            json={"items": _rand_cart(), "payerEmail": _rand_email()},
            timeout=30.0,
        )
        resp.raise_for_status()
        j = resp.json()
        external_id = j["external_id"]
        invoice_url = j["invoice_url"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"checkout: {e}"
        return r
    r.t_checkout = time.perf_counter() - t0

    # 2) extract invoice id
    invoice_id = invoice_id_from_url(invoice_url)
    if not invoice_id:
        r.err = f"bad invoice_url: {invoice_url}"
        return r

    # 3) emit outcome (simulate the provider's callback)
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{invoice_id}/emit",
            params={"status": emit_status, "repeat": repeat},
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 4) poll payment status until non-PENDING or timeout
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "PENDING"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(
                f"{base}/api/payment-status",
                params={"transaction_id": external_id},
                timeout=10.0,
            )
            if g.status_code == 200:
                status = g.json().get("status", status)
                if status in FINAL:
                    break
            await asyncio.sleep(poll_interval_s)
    except (httpx.HTTPError, ValueError) as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = status if status in FINAL else "TIMEOUT"
    return r


async def run_load(
    base: str,
    total: int,
    concurrency: int,
    expire_rate: float,
    cancel_rate: float,
    repeat: int,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "StorefrontLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < expire_rate:
                    emit_status = "EXPIRED"
                elif rnd < expire_rate + cancel_rate:
                    emit_status = "CANCELLED"
                else:
                    emit_status = "PAID"

                res = await one_order(
                    client, base, emit_status, repeat,
                    poll_interval_s, poll_timeout_s
                )
                if res.err:
                    logger.debug("order %d: %s", n, res.err)
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="Storefront load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--expire-rate", type=float, default=0.0,
                    help="Fraction of invoices to expire")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of invoices to cancel")
    ap.add_argument("--repeat", type=int, default=2,
                    help="Webhook deliveries per invoice (1..10)")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for non-PENDING")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO)
    if args.expire_rate + args.cancel_rate > 0.95:
        logger.warning(
            "combined expire+cancel rate is very high; "
            "few SUCCESS outcomes will occur."
        )

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        total=args.total,
        concurrency=args.concurrency,
        expire_rate=args.expire_rate,
        cancel_rate=args.cancel_rate,
        repeat=args.repeat,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
