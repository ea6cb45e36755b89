import time
import re
import random
import string
from datetime import datetime, timezone
import hmac
from typing import Optional


_REF_ALPHABET = string.ascii_lowercase + string.digits


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email or not isinstance(email, str):
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_external_id(ts: float | None = None) -> str:
    # order-<epoch ms>-<7 chars>; unique among near-simultaneous requests
    ms = int((now_ts() if ts is None else ts) * 1000)
    suffix = ''.join(random.choices(_REF_ALPHABET, k=7))
    return f"order-{ms}-{suffix}"
