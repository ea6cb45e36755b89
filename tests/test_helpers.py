import re

import pytest

from storefront.helpers import ct_equal, is_valid_email, new_external_id, to_iso
from storefront.infra import timings


@pytest.mark.parametrize("email", [
    "buyer@example.com", "  buyer@example.co.id ", "a.b+c@sub.example.org",
])
def test_valid_emails(email):
    assert is_valid_email(email)


@pytest.mark.parametrize("email", [
    None, "", "   ", "buyer", "buyer@", "buyer@example", "a b@example.com",
    123,
])
def test_invalid_emails(email):
    assert not is_valid_email(email)


def test_ct_equal():
    assert ct_equal("secret", "secret")
    assert not ct_equal("secret", "Secret")
    assert not ct_equal("secret", "")


def test_external_id_format():
    ref = new_external_id(ts=1700000000.123)
    assert re.fullmatch(r"order-1700000000123-[a-z0-9]{7}", ref)


def test_external_ids_are_unique_for_the_same_instant():
    refs = {new_external_id(ts=1700000000.0) for _ in range(1000)}
    assert len(refs) == 1000


def test_to_iso():
    assert to_iso(None) is None
    assert to_iso(0.0) == "1970-01-01T00:00:00+00:00"


@pytest.mark.anyio
async def test_timeit_records_durations():
    timings.reset()
    async with timings.timeit("unit.kind"):
        pass
    async with timings.timeit("unit.kind"):
        pass
    [rec] = timings.summary()
    assert rec["kind"] == "unit.kind"
    assert rec["n"] == 2
    assert rec["mean"] >= 0.0
    timings.log_summary()
    assert timings.summary() == []
