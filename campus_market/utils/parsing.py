import math

from flask import request

from campus_market.errors import ValidationError


def json_object() -> dict:
    """Request body as a dict. A missing or unparsable body counts as empty."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def parse_int(v, default=None, minv=None, maxv=None):
    """Lenient int parsing for query strings: out-of-range or junk gives ``default``."""
    if v is None or v == "":
        return default
    try:
        n = int(v)
    except (TypeError, ValueError):
        return default
    if minv is not None and n < minv:
        return default
    if maxv is not None and n > maxv:
        return default
    return n


def require_int(v, field: str, minv=None) -> int:
    """Strict int parsing for request bodies."""
    if isinstance(v, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        n = int(v)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(v, float) and v != n:
        raise ValidationError(f"{field} must be an integer")
    if minv is not None and n < minv:
        raise ValidationError(f"{field} must be at least {minv}")
    return n


def require_price(v) -> float:
    if isinstance(v, bool) or v is None or v == "":
        raise ValidationError("Price is required")
    try:
        price = float(v)
    except (TypeError, ValueError):
        raise ValidationError("Price must be a number")
    if not math.isfinite(price):
        raise ValidationError("Price must be a number")
    if price < 0:
        raise ValidationError("Price cannot be negative")
    return price


def parse_csv(v) -> list:
    return [part.strip().lower() for part in (v or "").split(",") if part.strip()]


def iso(dt):
    return dt.isoformat() if dt else None
