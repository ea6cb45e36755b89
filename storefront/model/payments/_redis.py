# payments/_redis.py
from __future__ import annotations
import json
from typing import Optional, Dict, Any, List
import redis.asyncio as redis

from ...errors import PersistenceError
from ..status import (
    ORDER_PAID, ORDER_PENDING, PAYMENT_PENDING, PAYMENT_SUCCESS,
)


# ---- keys
def k_payment(invoice_id: str) -> str: return f"payment:{invoice_id}"
def k_payment_ext(external_id: str) -> str: return f"payment:ext:{external_id}"
def k_order(external_id: str) -> str: return f"order:{external_id}"


PAYMENTS_INDEX = "idx:payments:created"


# KEYS: payment, ext index, order, created index
# ARGV: invoice_id, created_at, n payment args, payment pairs.., order pairs..
LUA_CREATE = r"""
if redis.call('EXISTS', KEYS[1]) == 1 or redis.call('EXISTS', KEYS[2]) == 1 then
  return 0
end
local npay = tonumber(ARGV[3])
for i = 4, 3 + npay, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
for i = 4 + npay, #ARGV, 2 do
  redis.call('HSET', KEYS[3], ARGV[i], ARGV[i + 1])
end
redis.call('SET', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[4], ARGV[2], ARGV[1])
return 1
"""

# compare-and-set on the hash's status field
# KEYS: hash
# ARGV: new status, 'not' | 'from', guard status, extra field pairs..
LUA_TRANSITION = r"""
local cur = redis.call('HGET', KEYS[1], 'status')
if not cur then
  return 0
end
if ARGV[2] == 'not' then
  if cur == ARGV[3] then return 0 end
elseif cur ~= ARGV[3] then
  return 0
end
redis.call('HSET', KEYS[1], 'status', ARGV[1])
for i = 4, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
return 1
"""


def _pairs(mapping: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for k, v in mapping.items():
        if v is None:
            continue
        out.extend((k, str(v)))
    return out


def _opt_float(v: Optional[str]) -> Optional[float]:
    return float(v) if v not in (None, "") else None


def _payment_from_hash(h: Dict[str, str]) -> Dict[str, Any]:
    return {
        "invoice_id": h["invoice_id"],
        "order_id": h.get("order_id", ""),
        "external_id": h.get("external_id", ""),
        "amount": int(h.get("amount", "0")),
        "currency": h.get("currency", ""),
        "invoice_url": h.get("invoice_url") or None,
        "status": h.get("status", PAYMENT_PENDING),
        "payment_method": h.get("payment_method") or None,
        "paid_at": _opt_float(h.get("paid_at")),
        "created_at": float(h.get("created_at", "0")),
        "updated_at": float(h.get("updated_at", "0")),
    }


def _order_from_hash(h: Dict[str, str]) -> Dict[str, Any]:
    return {
        "id": h.get("id", ""),
        "external_id": h["external_id"],
        "payer_email": h.get("payer_email", ""),
        "items": json.loads(h.get("items") or "[]"),
        "subtotal": int(h.get("subtotal", "0")),
        "shipping_cost": int(h.get("shipping_cost", "0")),
        "total": int(h.get("total", "0")),
        "currency": h.get("currency", ""),
        "status": h.get("status", ORDER_PENDING),
        "created_at": float(h.get("created_at", "0")),
        "updated_at": float(h.get("updated_at", "0")),
        "paid_at": _opt_float(h.get("paid_at")),
    }


class PaymentStore:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r
        self._create = r.register_script(LUA_CREATE)
        self._transition = r.register_script(LUA_TRANSITION)

    async def create_order_and_payment(
            self, order: Dict[str, Any], payment: Dict[str, Any]
    ) -> None:
        created = float(order["created_at"])
        pay_args = _pairs({
            "invoice_id": payment["invoice_id"],
            "order_id": order["id"],
            "external_id": order["external_id"],
            "amount": int(payment["amount"]),
            "currency": payment["currency"],
            "invoice_url": payment.get("invoice_url"),
            "status": PAYMENT_PENDING,
            "created_at": created,
            "updated_at": created,
        })
        order_args = _pairs({
            "id": order["id"],
            "external_id": order["external_id"],
            "payer_email": order["payer_email"],
            "items": json.dumps(order["items"]),
            "subtotal": int(order["subtotal"]),
            "shipping_cost": int(order["shipping_cost"]),
            "total": int(order["total"]),
            "currency": order["currency"],
            "status": ORDER_PENDING,
            "created_at": created,
            "updated_at": created,
        })
        ok = await self._create(
            keys=[
                k_payment(payment["invoice_id"]),
                k_payment_ext(order["external_id"]),
                k_order(order["external_id"]),
                PAYMENTS_INDEX,
            ],
            args=[payment["invoice_id"], created, len(pay_args),
                  *pay_args, *order_args],
        )
        if not int(ok):
            raise PersistenceError(
                f"payment {payment['invoice_id']} already exists"
            )

    async def get_payment(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_payment(invoice_id))
        return _payment_from_hash(h) if h else None

    async def find_payment(self, reference: str) -> Optional[Dict[str, Any]]:
        """Resolve an order reference or a provider invoice id."""
        invoice_id = await self.r.get(k_payment_ext(reference))
        return await self.get_payment(invoice_id or reference)

    async def get_order(self, external_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_order(external_id))
        return _order_from_hash(h) if h else None

    async def mark_paid(
        self, invoice_id: str, paid_at: float,
        payment_method: Optional[str] = None,
    ) -> bool:
        ok = await self._transition(
            keys=[k_payment(invoice_id)],
            args=[PAYMENT_SUCCESS, "not", PAYMENT_SUCCESS, *_pairs({
                "paid_at": paid_at,
                "updated_at": paid_at,
                "payment_method": payment_method or None,
            })],
        )
        return bool(int(ok))

    async def mark_failed(
        self, invoice_id: str, new_status: str, now: float
    ) -> bool:
        ok = await self._transition(
            keys=[k_payment(invoice_id)],
            args=[new_status, "from", PAYMENT_PENDING,
                  *_pairs({"updated_at": now})],
        )
        return bool(int(ok))

    async def propagate_order_status(
        self, external_id: str, order_status: str, now: float,
        paid_at: Optional[float] = None,
    ) -> bool:
        if order_status == ORDER_PAID:
            guard = ["not", ORDER_PAID]
            extra = {"paid_at": paid_at, "updated_at": now}
        else:
            guard = ["from", ORDER_PENDING]
            extra = {"updated_at": now}
        ok = await self._transition(
            keys=[k_order(external_id)],
            args=[order_status, *guard, *_pairs(extra)],
        )
        return bool(int(ok))

    async def list_recent_payments(
            self, limit: int = 100, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        # page through the whole index until enough rows match
        page = limit if not status else limit * 5
        items: List[Dict[str, Any]] = []
        start = 0
        while len(items) < limit:
            invoice_ids = await self.r.zrevrange(
                PAYMENTS_INDEX, start, start + page - 1
            )
            if not invoice_ids:
                break
            start += len(invoice_ids)
            pipe = self.r.pipeline()
            for invoice_id in invoice_ids:
                pipe.hgetall(k_payment(invoice_id))
            for h in await pipe.execute():
                if not h:
                    continue
                p = _payment_from_hash(h)
                if status and p["status"] != status:
                    continue
                items.append(p)
                if len(items) >= limit:
                    break
        return items
