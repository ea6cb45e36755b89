from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .checkout import start_checkout
from .config import Settings, WEBHOOK_PATH
from .errors import (
    AuthenticationError, ClientInputError, ConfigurationError,
    PersistenceError, StorefrontError,
)
from .helpers import to_iso
from .infra.sql import make_async_engine
from .infra.timings import log_summary, timeit
from .logs import configure_logging
from .model.payments import PaymentStore, create_schema, new_store
from .model.status import PAYMENT_PENDING, UNKNOWN
from .provider import PaymentAdapter, mock_event, new_adapter
from .reconcile import (
    CALLBACK_TOKEN_HEADER, apply_event, authenticate, parse_event,
)

logger = logging.getLogger(__name__)

router = APIRouter()
mockpay_router = APIRouter()

MOCK_EMIT_STATUSES = ("PAID", "SETTLED", "EXPIRED", "CANCELLED", "FAILED",
                      "PENDING")


# ----------------------------
# startup / shutdown
# ----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(
        "Storefront starting: payments backend=%s provider=%s",
        settings.payment_backend, settings.payment_provider,
    )
    if not settings.xendit_callback_token:
        logger.warning("XENDIT_CALLBACK_TOKEN is not set; "
                       "webhooks will be refused")

    app.state.engine = None
    app.state.redis = None
    if settings.payment_backend == "sql":
        engine, SessionAsync, gated = make_async_engine(settings)
        async with engine.begin() as conn:
            await create_schema(conn)
        app.state.engine = engine
        app.state.SessionAsync = SessionAsync
        app.state.gated = gated
    else:
        app.state.redis = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    app.state.http = httpx.AsyncClient(
        timeout=settings.provider_timeout,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )
    try:
        yield
    finally:
        await app.state.http.aclose()
        app.state.http = None
        if app.state.redis is not None:
            await app.state.redis.aclose()
            app.state.redis = None
        if app.state.engine is not None:
            await app.state.engine.dispose()
            app.state.engine = None
        log_summary()


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.adapter


def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


async def payment_store(request: Request) -> PaymentStore:
    state = request.app.state
    if state.settings.payment_backend == "sql":
        async with state.SessionAsync() as session:
            yield new_store("sql", db=session, gated=state.gated)
    else:
        yield new_store("redis", r=state.redis)


async def _json_body(request: Request, what: str) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise ClientInputError(f"{what}: body is not valid JSON")


# ----------------------------
# Error rendering
# ----------------------------
async def _storefront_error(request: Request, exc: StorefrontError):
    if isinstance(exc, ConfigurationError):
        logger.error("configuration error on %s: %s",
                     request.url.path, exc.message)
    elif isinstance(exc, AuthenticationError):
        logger.warning("rejected %s: %s", request.url.path, exc.message)
    elif exc.status_code >= 500:
        logger.error("%s failed: %s", request.url.path, exc.message)
    return ORJSONResponse(status_code=exc.status_code,
                          content=exc.to_response())


async def _unhandled_error(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s: %s", request.url.path, exc,
                 exc_info=exc)
    return ORJSONResponse(
        status_code=500,
        content={"message": "Internal server error."},
    )


# ----------------------------
# API: checkout
# ----------------------------
@router.post("/api/checkout")
async def create_checkout(
    request: Request,
    store: PaymentStore = Depends(payment_store),
    adapter: PaymentAdapter = Depends(get_adapter),
    http: httpx.AsyncClient = Depends(get_http),
    settings: Settings = Depends(get_settings),
):
    payload = await _json_body(request, "Invalid checkout request")
    return await start_checkout(
        payload, store=store, adapter=adapter, http=http, settings=settings,
    )


# ----------------------------
# Webhook endpoint (provider invoice callbacks)
# ----------------------------
@router.post(WEBHOOK_PATH)
async def xendit_webhook(
    request: Request,
    store: PaymentStore = Depends(payment_store),
    settings: Settings = Depends(get_settings),
):
    authenticate(settings.xendit_callback_token,
                 request.headers.get(CALLBACK_TOKEN_HEADER))
    payload = await _json_body(request, "Invalid invoice payload")
    event = parse_event(payload)
    try:
        outcome = await apply_event(store, event)
    except (SQLAlchemyError, RedisError) as e:
        # transitions are conditional writes, so a provider retry is safe
        logger.exception("webhook for %s not processed", event.reference)
        raise PersistenceError(
            "Internal error while processing webhook; please retry."
        ) from e
    return outcome.to_response()


# ----------------------------
# API: status (polled by the payment result page)
# ----------------------------
@router.get("/api/payment-status")
async def payment_status(
    transaction_id: Optional[str] = None,
    store: PaymentStore = Depends(payment_store),
):
    ref = (transaction_id or "").strip()
    if not ref:
        raise ClientInputError("transaction_id is required")

    async with timeit("store.find_payment"):
        payment = await store.find_payment(ref)
    if payment is None:
        return ORJSONResponse(
            status_code=404,
            content={
                "transaction_id": ref,
                "status": UNKNOWN,
                "message": "Transaction not found",
            },
        )
    order = await store.get_order(payment["external_id"])
    return {
        "transaction_id": ref,
        "external_id": payment["external_id"],
        "invoice_id": payment["invoice_id"],
        "status": payment["status"],
        "order_status": order["status"] if order else None,
        "amount": payment["amount"],
        "currency": payment["currency"],
        "paid_at": to_iso(payment["paid_at"]),
    }


@router.get("/api/orders/{external_id}")
async def get_order(
    external_id: str,
    store: PaymentStore = Depends(payment_store),
):
    order = await store.get_order(external_id)
    if not order:
        return ORJSONResponse(
            status_code=404, content={"message": "order not found"}
        )
    payment = await store.find_payment(external_id)
    return {
        "external_id": order["external_id"],
        "status": order["status"],
        "payment_status": payment["status"] if payment else None,
        "items": order["items"],
        "subtotal": order["subtotal"],
        "shipping_cost": order["shipping_cost"],
        "total": order["total"],
        "currency": order["currency"],
        "created_at": to_iso(order["created_at"]),
        "paid_at": to_iso(order["paid_at"]),
    }


@router.get("/api/pending")
async def api_pending(
    limit: int = 100,
    store: PaymentStore = Depends(payment_store),
):
    limit = max(1, min(limit, 500))
    items = await store.list_recent_payments(limit=limit,
                                             status=PAYMENT_PENDING)
    return {
        "items": [
            {
                "invoice_id": p["invoice_id"],
                "external_id": p["external_id"],
                "amount": p["amount"],
                "currency": p["currency"],
                "created_at": to_iso(p["created_at"]),
            }
            for p in items
        ],
        "limit": limit,
    }


# ----------------------------
# MockPay (local stand-in for the hosted invoice page)
# ----------------------------
@mockpay_router.get("/mockpay/{invoice_id}")
async def mockpay_screen(
    invoice_id: str,
    store: PaymentStore = Depends(payment_store),
    settings: Settings = Depends(get_settings),
):
    payment = await store.get_payment(invoice_id)
    if not payment:
        return ORJSONResponse(
            status_code=404, content={"message": "invoice not found"}
        )
    return {
        "invoice_id": invoice_id,
        "external_id": payment["external_id"],
        "amount": payment["amount"],
        "currency": payment["currency"],
        "status": payment["status"],
        "webhook_url": settings.mock_webhook_url,
        "emit_url": f"/mockpay/{invoice_id}/emit?status=PAID",
    }


@mockpay_router.post("/mockpay/{invoice_id}/emit")
async def mockpay_emit(
    invoice_id: str,
    status: str = "PAID",
    repeat: int = 1,
    store: PaymentStore = Depends(payment_store),
    http: httpx.AsyncClient = Depends(get_http),
    settings: Settings = Depends(get_settings),
):
    status = status.upper()
    if status not in MOCK_EMIT_STATUSES:
        raise ClientInputError(f"invalid status {status!r}")
    if not 1 <= repeat <= 10:
        raise ClientInputError("repeat must be between 1 and 10")
    if not settings.xendit_callback_token:
        raise ConfigurationError("XENDIT_CALLBACK_TOKEN not configured")

    payment = await store.get_payment(invoice_id)
    if not payment:
        return ORJSONResponse(
            status_code=404, content={"message": "invoice not found"}
        )

    event = mock_event(payment, status)
    delivered = 0
    for _ in range(repeat):
        try:
            resp = await http.post(
                settings.mock_webhook_url,
                json=event,
                headers={CALLBACK_TOKEN_HEADER: settings.xendit_callback_token},
            )
        except httpx.HTTPError as e:
            # the user can retry from the page
            logger.warning("mock webhook delivery for %s failed: %s",
                           invoice_id, e)
            continue
        if resp.is_success:
            delivered += 1
        else:
            logger.warning("mock webhook for %s answered HTTP %s",
                           invoice_id, resp.status_code)

    ok = status in ("PAID", "SETTLED")
    redirect = (settings.success_redirect_url if ok
                else settings.failure_redirect_url)
    return {
        "invoice_id": invoice_id,
        "status": status,
        "attempts": repeat,
        "delivered": delivered,
        "redirect_url": f"{redirect}?transaction_id={payment['external_id']}",
    }


def create_app(
    settings: Optional[Settings] = None,
    adapter: Optional[PaymentAdapter] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Storefront",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.adapter = adapter or new_adapter(settings)

    app.add_exception_handler(StorefrontError, _storefront_error)
    app.add_exception_handler(Exception, _unhandled_error)

    app.include_router(router)
    if settings.payment_provider == "mock":
        app.include_router(mockpay_router)
    return app
