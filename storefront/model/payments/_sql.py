from __future__ import annotations
from typing import Optional, Dict, Any, List
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection

from ...infra.sql import Gated
from ..orm import Base, Order, Payment
from ..status import (
    ORDER_PAID, ORDER_PENDING, PAYMENT_PENDING, PAYMENT_SUCCESS,
)


def _select(model):
    # rows re-read after a conditional UPDATE must not come from the
    # identity map
    return select(model).execution_options(populate_existing=True)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


def _order_dict(o: Order) -> Dict[str, Any]:
    return {
        "id": o.id,
        "external_id": o.external_id,
        "payer_email": o.payer_email,
        "items": list(o.items or []),
        "subtotal": o.subtotal,
        "shipping_cost": o.shipping_cost,
        "total": o.total,
        "currency": o.currency,
        "status": o.status,
        "created_at": o.created_at,
        "updated_at": o.updated_at,
        "paid_at": o.paid_at,
    }


def _payment_dict(p: Payment) -> Dict[str, Any]:
    return {
        "invoice_id": p.invoice_id,
        "order_id": p.order_id,
        "external_id": p.external_id,
        "amount": p.amount,
        "currency": p.currency,
        "invoice_url": p.invoice_url,
        "status": p.status,
        "payment_method": p.payment_method,
        "paid_at": p.paid_at,
        "created_at": p.created_at,
        "updated_at": p.updated_at,
    }


class PaymentStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create_order_and_payment(
            self, order: Dict[str, Any], payment: Dict[str, Any]
    ) -> None:
        created = float(order["created_at"])
        async with self.gated():
            async with self.db.begin():
                self.db.add(Order(
                    id=order["id"],
                    external_id=order["external_id"],
                    payer_email=order["payer_email"],
                    items=order["items"],
                    subtotal=int(order["subtotal"]),
                    shipping_cost=int(order["shipping_cost"]),
                    total=int(order["total"]),
                    currency=order["currency"],
                    status=ORDER_PENDING,
                    created_at=created,
                    updated_at=created,
                ))
                # orders row must exist before the FK'd payments row
                await self.db.flush()
                self.db.add(Payment(
                    invoice_id=payment["invoice_id"],
                    order_id=order["id"],
                    external_id=order["external_id"],
                    amount=int(payment["amount"]),
                    currency=payment["currency"],
                    invoice_url=payment.get("invoice_url"),
                    status=PAYMENT_PENDING,
                    created_at=created,
                    updated_at=created,
                ))

    async def get_payment(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                p = (await self.db.execute(
                    _select(Payment).where(Payment.invoice_id == invoice_id)
                )).scalar_one_or_none()
                return _payment_dict(p) if p else None

    async def find_payment(self, reference: str) -> Optional[Dict[str, Any]]:
        """Resolve an order reference or a provider invoice id."""
        async with self.gated():
            async with self.db.begin():
                p = (await self.db.execute(
                    _select(Payment).where(Payment.external_id == reference)
                )).scalar_one_or_none()
                if p is None:
                    p = (await self.db.execute(
                        _select(Payment).where(Payment.invoice_id == reference)
                    )).scalar_one_or_none()
                return _payment_dict(p) if p else None

    async def get_order(self, external_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                o = (await self.db.execute(
                    _select(Order).where(Order.external_id == external_id)
                )).scalar_one_or_none()
                return _order_dict(o) if o else None

    async def mark_paid(
        self, invoice_id: str, paid_at: float,
        payment_method: Optional[str] = None,
    ) -> bool:
        # single conditional UPDATE: only one concurrent delivery matches
        values: Dict[str, Any] = {
            "status": PAYMENT_SUCCESS,
            "paid_at": paid_at,
            "updated_at": paid_at,
        }
        if payment_method:
            values["payment_method"] = payment_method
        stmt = (
            update(Payment)
            .where(
                Payment.invoice_id == invoice_id,
                Payment.status != PAYMENT_SUCCESS,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
                changed = result.rowcount == 1
        return changed

    async def mark_failed(
        self, invoice_id: str, new_status: str, now: float
    ) -> bool:
        stmt = (
            update(Payment)
            .where(
                Payment.invoice_id == invoice_id,
                Payment.status == PAYMENT_PENDING,
            )
            .values(status=new_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
                changed = result.rowcount == 1
        return changed

    async def propagate_order_status(
        self, external_id: str, order_status: str, now: float,
        paid_at: Optional[float] = None,
    ) -> bool:
        if order_status == ORDER_PAID:
            guard = Order.status != ORDER_PAID
            values = {"status": ORDER_PAID, "paid_at": paid_at,
                      "updated_at": now}
        else:
            guard = Order.status == ORDER_PENDING
            values = {"status": order_status, "updated_at": now}
        stmt = (
            update(Order)
            .where(Order.external_id == external_id, guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
                changed = result.rowcount == 1
        return changed

    async def list_recent_payments(
            self, limit: int = 100, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        stmt = _select(Payment).order_by(Payment.created_at.desc())
        if status:
            stmt = stmt.where(Payment.status == status)
        stmt = stmt.limit(max(1, min(int(limit), 500)))
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(stmt)).scalars().all()
                return [_payment_dict(p) for p in rows]
