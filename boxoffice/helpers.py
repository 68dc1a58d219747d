import time
import re
import secrets
from datetime import datetime, timezone
import hmac
from typing import Optional

from .config import ORDER_NUMBER_PREFIX


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
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_id() -> str:
    return secrets.token_hex(16)


def generate_order_number(ts: float | None = None) -> str:
    """e.g. BX261018-9F3A04C2"""
    ts = now_ts() if ts is None else ts
    date_part = datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%y%m%d")
    return f"{ORDER_NUMBER_PREFIX}{date_part}-{secrets.token_hex(4).upper()}"
