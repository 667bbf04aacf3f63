import math
import time
from datetime import datetime, timezone
import hmac
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_encodable(text: str) -> bool:
    # lone surrogates survive JSON decoding but not UTF-8 encoding
    try:
        text.encode()
    except UnicodeEncodeError:
        return False
    return True


def ct_equal(a: str, b: str) -> bool:
    if not (is_encodable(a) and is_encodable(b)):
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def is_positive_number(value: Any) -> bool:
    # bool is an int subclass; "true" is not an amount
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def as_number(value: Any) -> int | float:
    # storage hands balances back as strings or floats; keep whole numbers
    # whole in JSON
    f = float(value)
    return int(f) if f.is_integer() else f


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value in ("1", "true", "True")
    return bool(value)
