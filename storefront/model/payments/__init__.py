from typing import Any, Dict, List, Optional, Protocol
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated
from ._redis import PaymentStore as RedisPaymentStore
from ._sql import PaymentStore as SqlPaymentStore, create_schema

BACKENDS = ("sql", "redis")


class PaymentStore(Protocol):
    async def create_order_and_payment(
            self, order: Dict[str, Any], payment: Dict[str, Any]
    ) -> None: ...

    async def get_payment(
            self, invoice_id: str) -> Optional[Dict[str, Any]]: ...

    async def find_payment(
            self, reference: str) -> Optional[Dict[str, Any]]: ...

    async def get_order(
            self, external_id: str) -> Optional[Dict[str, Any]]: ...

    async def mark_paid(
        self, invoice_id: str, paid_at: float,
        payment_method: Optional[str] = None,
    ) -> bool: ...

    async def mark_failed(
            self, invoice_id: str, new_status: str, now: float) -> bool: ...

    async def propagate_order_status(
        self, external_id: str, order_status: str, now: float,
        paid_at: Optional[float] = None,
    ) -> bool: ...

    async def list_recent_payments(
            self, limit: int = 100, status: Optional[str] = None
    ) -> List[Dict[str, Any]]: ...


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Optional[Gated] = None) -> PaymentStore:
    if backend == "sql":
        if db is None:
            raise RuntimeError("PaymentStore(sql) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("PaymentStore(sql) requires gated=Gated")
        return SqlPaymentStore(db=db, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError("PaymentStore(redis) requires r=redis.Redis")
        return RedisPaymentStore(r=r)
    raise RuntimeError(f"unknown payment backend {backend!r}")


__all__ = ["PaymentStore", "new_store", "create_schema", "BACKENDS"]
