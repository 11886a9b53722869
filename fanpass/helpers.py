import time
import re
import secrets
import uuid
from datetime import datetime, timezone
import hmac
from typing import Optional


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
    return uuid.uuid4().hex


def ticket_number(ts: float | None = None) -> str:
    # ELT-<8 digits of ms clock>-<8 hex>, unique index backs it up
    ms = int((ts if ts is not None else now_ts()) * 1000)
    return f"ELT-{str(ms)[-8:]}-{secrets.token_hex(4).upper()}"


def payment_reference(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20].upper()}"


def withdrawal_reference(ts: float | None = None) -> str:
    day = datetime.fromtimestamp(
        ts if ts is not None else now_ts(), tz=timezone.utc
    ).strftime("%Y%m%d")
    return f"WD-{day}-{secrets.token_hex(3).upper()}"
