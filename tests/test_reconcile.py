import asyncio
import logging

import pytest
from sqlalchemy.exc import OperationalError

from storefront.errors import (
    AuthenticationError, ClientInputError, ConfigurationError,
)
from storefront.model.status import (
    ORDER_EXPIRED, ORDER_FAILED, ORDER_PAID, ORDER_PENDING, PAYMENT_EXPIRED,
    PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCESS,
)
from storefront.reconcile import (
    APPLIED, IGNORED, REPLAYED, UNKNOWN_INVOICE, WebhookEvent, apply_event,
    authenticate, classify, parse_event,
)

from .conftest import order_fixture

EXT = "order-1700000000000-abc1234"


def _event(status, invoice_id="inv_0001", external_id=EXT, method=None):
    return WebhookEvent(invoice_id, external_id, status, method)


async def _seed(store):
    order, payment = order_fixture("inv_0001", EXT)
    await store.create_order_and_payment(order, payment)


def test_parse_event():
    event = parse_event({
        "id": "579c8d61f23fa4ca35e52da4",
        "external_id": EXT,
        "status": "paid",
        "payment_method": "BANK_TRANSFER",
        "paid_amount": 165000,
    })
    assert event == WebhookEvent(
        "579c8d61f23fa4ca35e52da4", EXT, "PAID", "BANK_TRANSFER"
    )
    assert event.reference == "579c8d61f23fa4ca35e52da4"


def test_parse_event_with_external_id_only():
    event = parse_event({"external_id": EXT, "status": "EXPIRED"})
    assert event.invoice_id is None
    assert event.reference == EXT


def test_parse_event_stringifies_numeric_ids():
    assert parse_event({"id": 42, "status": "PAID"}).invoice_id == "42"


@pytest.mark.parametrize("payload", [
    None, [], "PAID", {}, {"id": "inv_0001"}, {"status": "PAID"},
    {"id": " ", "status": "PAID"}, {"id": "inv_0001", "status": ""},
])
def test_parse_event_rejects(payload):
    with pytest.raises(ClientInputError) as exc:
        parse_event(payload)
    assert exc.value.message.startswith("Invalid invoice payload")


def test_authenticate():
    authenticate("cb-token", "cb-token")
    with pytest.raises(AuthenticationError):
        authenticate("cb-token", "wrong")
    with pytest.raises(AuthenticationError):
        authenticate("cb-token", None)
    with pytest.raises(ConfigurationError):
        authenticate(None, "cb-token")


@pytest.mark.parametrize("status, target", [
    ("PAID", PAYMENT_SUCCESS), ("settled", PAYMENT_SUCCESS),
    ("EXPIRED", PAYMENT_EXPIRED), ("CANCELLED", PAYMENT_FAILED),
    ("CANCELED", PAYMENT_FAILED), ("FAILED", PAYMENT_FAILED),
    ("PENDING", None), ("SOMETHING_NEW", None),
])
def test_classify(status, target):
    assert classify(status) == target


@pytest.mark.anyio
async def test_paid_is_applied_once(make_store):
    store = make_store()
    await _seed(store)

    first = await apply_event(store, _event("PAID", method="EWALLET"),
                              now=1700000100.0)
    assert (first.outcome, first.status) == (APPLIED, PAYMENT_SUCCESS)

    again = await apply_event(store, _event("PAID"), now=1700000200.0)
    assert (again.outcome, again.status) == (REPLAYED, PAYMENT_SUCCESS)

    p = await store.get_payment("inv_0001")
    assert p["paid_at"] == 1700000100.0
    assert p["payment_method"] == "EWALLET"
    o = await store.get_order(EXT)
    assert o["status"] == ORDER_PAID
    assert o["paid_at"] == 1700000100.0


@pytest.mark.anyio
async def test_expired_after_paid_is_a_no_op(make_store):
    store = make_store()
    await _seed(store)
    await apply_event(store, _event("PAID"), now=1700000100.0)

    late = await apply_event(store, _event("EXPIRED"), now=1700000200.0)
    assert (late.outcome, late.status) == (REPLAYED, PAYMENT_SUCCESS)
    assert (await store.get_order(EXT))["status"] == ORDER_PAID


@pytest.mark.anyio
async def test_payment_after_expiry_wins(make_store):
    store = make_store()
    await _seed(store)

    expired = await apply_event(store, _event("EXPIRED"), now=1700000100.0)
    assert (expired.outcome, expired.status) == (APPLIED, PAYMENT_EXPIRED)
    assert (await store.get_order(EXT))["status"] == ORDER_EXPIRED

    paid = await apply_event(store, _event("PAID"), now=1700000200.0)
    assert (paid.outcome, paid.status) == (APPLIED, PAYMENT_SUCCESS)
    o = await store.get_order(EXT)
    assert o["status"] == ORDER_PAID
    assert o["paid_at"] == 1700000200.0


@pytest.mark.anyio
async def test_cancelled_marks_failed(make_store):
    store = make_store()
    await _seed(store)
    outcome = await apply_event(store, _event("CANCELLED"), now=1700000100.0)
    assert (outcome.outcome, outcome.status) == (APPLIED, PAYMENT_FAILED)
    assert (await store.get_order(EXT))["status"] == ORDER_FAILED

    # a second terminal failure never overwrites the first
    outcome = await apply_event(store, _event("EXPIRED"), now=1700000200.0)
    assert (outcome.outcome, outcome.status) == (REPLAYED, PAYMENT_FAILED)


@pytest.mark.anyio
async def test_informational_status_is_ignored(make_store):
    store = make_store()
    await _seed(store)
    outcome = await apply_event(store, _event("PENDING"))
    assert (outcome.outcome, outcome.status) == (IGNORED, PAYMENT_PENDING)
    assert (await store.get_order(EXT))["status"] == ORDER_PENDING


@pytest.mark.anyio
async def test_unknown_invoice_is_logged(make_store, caplog):
    store = make_store()
    with caplog.at_level(logging.WARNING, logger="storefront.reconcile"):
        outcome = await apply_event(store, _event("PAID", "inv_missing"))
    assert outcome.outcome == UNKNOWN_INVOICE
    assert "inv_missing" in caplog.text


@pytest.mark.anyio
async def test_lookup_by_external_id_when_id_absent(make_store):
    store = make_store()
    await _seed(store)
    outcome = await apply_event(store, _event("PAID", invoice_id=None),
                                now=1700000100.0)
    assert outcome.outcome == APPLIED
    assert outcome.invoice_id == "inv_0001"


@pytest.mark.anyio
async def test_id_is_not_confused_with_external_id(make_store):
    store = make_store()
    await _seed(store)
    # id present but unknown: the external_id is not used as a fallback
    outcome = await apply_event(store, _event("PAID", invoice_id="inv_other"))
    assert outcome.outcome == UNKNOWN_INVOICE
    assert (await store.get_payment("inv_0001"))["status"] == PAYMENT_PENDING


@pytest.mark.anyio
async def test_concurrent_deliveries_apply_once(make_store):
    await _seed(make_store())
    stores = [make_store() for _ in range(4)]
    outcomes = await asyncio.gather(*(
        apply_event(s, _event("PAID"), now=1700000100.0 + n)
        for n, s in enumerate(stores)
    ))
    assert sorted(o.outcome for o in outcomes) == (
        [APPLIED] + [REPLAYED] * 3
    )
    assert all(o.status == PAYMENT_SUCCESS for o in outcomes)

    [winner] = [n for n, o in enumerate(outcomes) if o.outcome == APPLIED]
    p = await stores[0].get_payment("inv_0001")
    assert p["status"] == PAYMENT_SUCCESS
    assert p["paid_at"] == 1700000100.0 + winner
    o = await stores[0].get_order(EXT)
    assert o["paid_at"] == 1700000100.0 + winner


@pytest.mark.anyio
async def test_order_failure_does_not_fail_the_event(make_store, mocker,
                                                     caplog):
    store = make_store()
    await _seed(store)
    mocker.patch.object(
        store, "propagate_order_status",
        side_effect=OperationalError("UPDATE orders", {}, Exception("locked")),
    )
    with caplog.at_level(logging.ERROR, logger="storefront.reconcile"):
        outcome = await apply_event(store, _event("PAID"), now=1700000100.0)
    assert (outcome.outcome, outcome.status) == (APPLIED, PAYMENT_SUCCESS)
    assert "stays authoritative" in caplog.text
    assert (await store.get_order(EXT))["status"] == ORDER_PENDING

    mocker.stopall()
    # the provider's redelivery repairs the order
    again = await apply_event(store, _event("PAID"), now=1700000200.0)
    assert again.outcome == REPLAYED
    o = await store.get_order(EXT)
    assert o["status"] == ORDER_PAID
    assert o["paid_at"] == 1700000100.0
