"""Webhook reconciliation for provider invoice callbacks.

Deliveries are at-least-once and may arrive out of order, so every status
change is a single conditional write on the Payment record:

  PENDING/EXPIRED/FAILED --paid--> SUCCESS   (paid_at recorded once)
  PENDING --expired/failed--> EXPIRED/FAILED
  everything else is a no-op; SUCCESS is never left.

The Order row is updated afterwards with the same guards, best effort.
Payment stays the authoritative record.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .errors import AuthenticationError, ClientInputError, ConfigurationError
from .helpers import ct_equal, now_ts
from .infra.timings import timeit
from .model.payments import PaymentStore
from .model.status import (
    ORDER_PENDING, ORDER_STATUS_FOR, PAYMENT_EXPIRED, PAYMENT_FAILED,
    PAYMENT_SUCCESS,
)

logger = logging.getLogger(__name__)

CALLBACK_TOKEN_HEADER = "x-callback-token"

# provider status -> Payment status it asks for
_TARGETS = {
    "PAID": PAYMENT_SUCCESS,
    "SETTLED": PAYMENT_SUCCESS,
    "EXPIRED": PAYMENT_EXPIRED,
    "CANCELLED": PAYMENT_FAILED,
    "CANCELED": PAYMENT_FAILED,
    "FAILED": PAYMENT_FAILED,
}

# outcomes
APPLIED = "applied"
REPLAYED = "replayed"
IGNORED = "ignored"
UNKNOWN_INVOICE = "unknown"


@dataclass(frozen=True)
class WebhookEvent:
    invoice_id: Optional[str]
    external_id: Optional[str]
    status: str
    payment_method: Optional[str] = None

    @property
    def reference(self) -> str:
        return self.invoice_id or self.external_id or ""


@dataclass(frozen=True)
class Outcome:
    outcome: str
    status: Optional[str] = None
    invoice_id: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        return {"ok": True, "outcome": self.outcome, "status": self.status}


def authenticate(expected: Optional[str], received: Optional[str]) -> None:
    if not expected:
        raise ConfigurationError("XENDIT_CALLBACK_TOKEN not configured")
    if not received or not ct_equal(received, expected):
        raise AuthenticationError("Forbidden: invalid callback token")


def _opt_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    val = payload.get(key)
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        val = str(val)
    if isinstance(val, str) and val.strip():
        return val.strip()
    return None


def parse_event(payload: Any) -> WebhookEvent:
    if not isinstance(payload, dict):
        raise ClientInputError("Invalid invoice payload: expected an object")
    status = _opt_str(payload, "status")
    invoice_id = _opt_str(payload, "id")
    external_id = _opt_str(payload, "external_id")
    if not status or not (invoice_id or external_id):
        raise ClientInputError(
            "Invalid invoice payload: status and id or external_id required"
        )
    return WebhookEvent(
        invoice_id=invoice_id,
        external_id=external_id,
        status=status.upper(),
        payment_method=_opt_str(payload, "payment_method"),
    )


def classify(status: str) -> Optional[str]:
    return _TARGETS.get(status.upper())


async def _propagate(
        store: PaymentStore, payment: Dict[str, Any], now: float) -> None:
    order_status = ORDER_STATUS_FOR.get(payment["status"], ORDER_PENDING)
    if order_status == ORDER_PENDING:
        return
    try:
        async with timeit("store.propagate_order_status"):
            changed = await store.propagate_order_status(
                payment["external_id"], order_status, now,
                paid_at=payment.get("paid_at"),
            )
    except (SQLAlchemyError, RedisError):
        logger.exception(
            "order %s not updated to %s; payment %s stays authoritative",
            payment["external_id"], order_status, payment["invoice_id"],
        )
        return
    if changed:
        logger.info("order %s -> %s", payment["external_id"], order_status)


async def apply_event(
    store: PaymentStore, event: WebhookEvent, now: Optional[float] = None
) -> Outcome:
    now = now_ts() if now is None else now

    async with timeit("store.lookup_payment"):
        if event.invoice_id:
            payment = await store.get_payment(event.invoice_id)
        else:
            payment = await store.find_payment(event.external_id)
    if payment is None:
        logger.warning(
            "webhook for unknown invoice %s (status %s); acknowledged",
            event.reference, event.status,
        )
        return Outcome(UNKNOWN_INVOICE)

    invoice_id = payment["invoice_id"]
    target = classify(event.status)
    if target is None:
        logger.info(
            "invoice %s: status %s needs no action",
            invoice_id, event.status,
        )
        return Outcome(IGNORED, payment["status"], invoice_id)

    async with timeit("store.transition"):
        if target == PAYMENT_SUCCESS:
            changed = await store.mark_paid(
                invoice_id, now, event.payment_method
            )
        else:
            changed = await store.mark_failed(invoice_id, target, now)

    current = await store.get_payment(invoice_id) or payment
    if changed:
        logger.info(
            "invoice %s: %s -> %s", invoice_id, payment["status"], target
        )
    else:
        logger.info(
            "invoice %s: %s event is a no-op in state %s",
            invoice_id, event.status, current["status"],
        )

    # guarded and repeatable; a redelivery also repairs a missed update
    await _propagate(store, current, now)
    return Outcome(APPLIED if changed else REPLAYED, current["status"],
                   invoice_id)
