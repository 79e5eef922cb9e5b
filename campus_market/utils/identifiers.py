import secrets
from datetime import datetime, timezone


def new_transaction_id() -> str:
    """16 uppercase hex chars from 8 CSPRNG bytes."""
    return secrets.token_hex(8).upper()


def utcnow() -> datetime:
    # naive UTC, matching what the DateTime columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)
