import hashlib
import hmac
from decimal import Decimal
from urllib.parse import urlencode


def _wire(value):
    # Decimals go out in plain notation (no exponent), bools as lowercase words
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def build_query(params: dict) -> str:
    clean = {k: _wire(v) for k, v in params.items() if v is not None}
    return urlencode(clean, doseq=True)


def sign(secret: str, query_string: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        query_string.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def signed_query(secret: str, params: dict) -> str:
    """Query string with its HMAC-SHA256 signature appended."""
    query = build_query(params)
    return f"{query}&signature={sign(secret, query)}"
