import time
import re
import secrets
import string
from datetime import datetime, timezone
import hmac
from typing import Any, Mapping, Optional

from .errors import ValidationError


TOKEN_ALPHABET = string.ascii_uppercase + string.digits
TOKEN_RANDOM_LEN = 5


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Any) -> bool:
    if not email or not isinstance(email, str):
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def digits_only(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return re.sub(r"\D", "", value)


def is_valid_cpf(value: Any) -> bool:
    # length check only; the provider validates the check digits
    return len(digits_only(value)) == 11


def str_field(payload: Mapping[str, Any], key: str) -> str:
    """Stripped string value of a JSON field; missing or null is ''."""
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip()


def split_name(full_name: Optional[str],
               first_default: str = "User",
               last_default: str = "User") -> tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return first_default, last_default
    return parts[0], " ".join(parts[1:]) or last_default


def new_token(prefix: str) -> str:
    # collisions are not checked; the unique index on unique_token rejects one
    rnd = "".join(
        secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_RANDOM_LEN)
    )
    return f"{prefix}{rnd}"


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]
