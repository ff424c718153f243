import base64
import hashlib
import hmac
import json
import secrets
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .exceptions import ValidationError


def gen_transaction_id() -> str:
    # millisecond timestamp + 48 random bits
    return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def parse_amount(raw) -> Decimal:
    if raw is None or isinstance(raw, bool):
        raise ValidationError("Invalid amount value")
    try:
        amount = Decimal(str(raw).strip()).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid amount value")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be > 0")
    return amount


def to_minor_units(amount) -> int:
    """Rupees -> paise."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def encode_payload(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode("ascii")


def x_verify(message: str, salt_key: str, salt_index) -> str:
    """Legacy gateway checksum: sha256hex(message + salt) + '###' + index."""
    digest = hashlib.sha256((message + salt_key).encode("utf-8")).hexdigest()
    return f"{digest}###{salt_index}"


def verify_x_verify(message: str, header: str, salt_key: str) -> bool:
    signature, _, _index = (header or "").strip().partition("###")
    if not signature or not salt_key:
        return False
    expected = hashlib.sha256((message + salt_key).encode("utf-8")).hexdigest()
    return hmac.compare_digest(expected, signature.lower())


def mask(secret: str, keep: int = 4) -> str:
    if not secret:
        return ""
    return secret[:keep] + "*" * max(len(secret) - keep, 0)
