"""Checkout: validate the cart, request an invoice, persist the pending order.

No local record is written unless the provider returned an invoice; a
storage failure after that point is reported with the invoice link so the
client does not create a second invoice by retrying.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Sequence, Tuple

import httpx

from .config import Settings
from .errors import ClientInputError, PersistenceError
from .helpers import is_valid_email, new_external_id, now_ts
from .infra.timings import timeit
from .model.payments import PaymentStore
from .provider import InvoiceRequest, PaymentAdapter

logger = logging.getLogger(__name__)

# upper bounds, checked before any invoice is requested
MAX_PRICE = 1_000_000_000_000
MAX_QUANTITY = 10_000
MAX_TOTAL = 1_000_000_000_000


@dataclass(frozen=True)
class LineItem:
    product_id: str
    name: str
    price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _parse_item(n: int, raw: Any) -> LineItem:
    if not isinstance(raw, dict):
        raise ClientInputError(f"items[{n}] must be an object.")
    product_id = raw.get("productId")
    name = raw.get("name")
    if not isinstance(product_id, str) or not product_id.strip():
        raise ClientInputError(f"items[{n}].productId is required.")
    if not isinstance(name, str) or not name.strip():
        raise ClientInputError(f"items[{n}].name is required.")
    price = _as_int(raw.get("price"))
    if price is None or price < 0:
        raise ClientInputError(
            f"items[{n}].price must be a non-negative integer."
        )
    if price > MAX_PRICE:
        raise ClientInputError(
            f"items[{n}].price must not exceed {MAX_PRICE}."
        )
    quantity = _as_int(raw.get("quantity"))
    if quantity is None or quantity < 1:
        raise ClientInputError(
            f"items[{n}].quantity must be a positive integer."
        )
    if quantity > MAX_QUANTITY:
        raise ClientInputError(
            f"items[{n}].quantity must not exceed {MAX_QUANTITY}."
        )
    return LineItem(product_id.strip(), name.strip(), price, quantity)


def parse_cart(payload: Any) -> Tuple[List[LineItem], str]:
    if not isinstance(payload, dict):
        raise ClientInputError("Request body must be a JSON object.")
    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ClientInputError("Order data is incomplete: no items.")
    payer_email = payload.get("payerEmail")
    if not is_valid_email(payer_email):
        raise ClientInputError(
            "payerEmail is required and must be a valid email address."
        )
    items = [_parse_item(n, raw) for n, raw in enumerate(raw_items)]
    return items, payer_email.strip()


def compute_totals(
        items: Sequence[LineItem], shipping_cost: int) -> Tuple[int, int]:
    subtotal = sum(item.line_total for item in items)
    return subtotal, subtotal + shipping_cost


def build_invoice_request(
    *, external_id: str, payer_email: str, items: Sequence[LineItem],
    total: int, settings: Settings,
) -> InvoiceRequest:
    return {
        "external_id": external_id,
        "payer_email": payer_email,
        "description": (
            f"Purchase at the storefront. Total {len(items)} item(s)."
        ),
        "amount": total,
        "currency": settings.currency,
        "invoice_duration": settings.invoice_duration,
        "success_redirect_url": (
            f"{settings.success_redirect_url}?transaction_id={external_id}"
        ),
        "failure_redirect_url": (
            f"{settings.failure_redirect_url}?transaction_id={external_id}"
        ),
        "items": [
            {"name": i.name, "price": i.price, "quantity": i.quantity}
            for i in items
        ],
    }


async def start_checkout(
    payload: Any,
    *,
    store: PaymentStore,
    adapter: PaymentAdapter,
    http: httpx.AsyncClient,
    settings: Settings,
) -> Dict[str, Any]:
    items, payer_email = parse_cart(payload)
    subtotal, total = compute_totals(items, settings.shipping_cost)
    if total > MAX_TOTAL:
        raise ClientInputError(
            f"Order total must not exceed {MAX_TOTAL} {settings.currency}."
        )
    adapter.ensure_configured()

    external_id = new_external_id()
    request = build_invoice_request(
        external_id=external_id, payer_email=payer_email, items=items,
        total=total, settings=settings,
    )

    async with timeit("provider.create_invoice"):
        invoice = await adapter.create_invoice(http, request)

    created = now_ts()
    order = {
        "id": uuid.uuid4().hex,
        "external_id": external_id,
        "payer_email": payer_email,
        "items": [asdict(i) for i in items],
        "subtotal": subtotal,
        "shipping_cost": settings.shipping_cost,
        "total": total,
        "currency": settings.currency,
        "created_at": created,
    }
    payment = {
        "invoice_id": invoice["invoice_id"],
        "amount": total,
        "currency": settings.currency,
        "invoice_url": invoice["invoice_url"],
    }

    try:
        async with timeit("store.create_order_and_payment"):
            await store.create_order_and_payment(order, payment)
    except Exception as e:
        # the invoice already exists; the response must carry its link
        logger.exception(
            "invoice %s created for %s but order was not saved",
            invoice["invoice_id"], external_id,
        )
        raise PersistenceError(
            "The invoice was created but the order could not be saved. "
            "Please pay using the invoice link instead of retrying.",
            extra={
                "invoice_created": True,
                "invoice_url": invoice["invoice_url"],
                "external_id": external_id,
            },
        ) from e

    logger.info(
        "order %s created: invoice=%s total=%d %s",
        external_id, invoice["invoice_id"], total, settings.currency,
    )
    return {
        "message": "Invoice created",
        "invoice_url": invoice["invoice_url"],
        "invoice_id": invoice["invoice_id"],
        "external_id": external_id,
        "subtotal": subtotal,
        "shipping_cost": settings.shipping_cost,
        "total": total,
        "currency": settings.currency,
    }
