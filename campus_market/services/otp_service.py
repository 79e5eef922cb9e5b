"""One-time codes for the physical hand-off between buyer and seller.

The buyer receives the plaintext exactly once (on order creation or
regeneration) and tells it to the seller, who submits it to complete the
delivery. Only a salted hash is ever persisted.
"""
import re
import secrets
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from flask import current_app
from werkzeug.security import check_password_hash, generate_password_hash

from campus_market.utils.identifiers import utcnow

OTP_PATTERN = re.compile(r"[0-9]{6}")
OTP_MIN = 100000
OTP_MAX = 999999


class IssuedOtp(NamedTuple):
    plaintext: str
    otp_hash: str
    expires_at: datetime
    attempts: int

    def as_columns(self) -> dict:
        return {
            "otp_hash": self.otp_hash,
            "otp_expires_at": self.expires_at,
            "otp_attempts": self.attempts,
        }


def generate_otp() -> str:
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def hash_otp(code: str) -> str:
    method = current_app.config.get("OTP_HASH_METHOD", "scrypt")
    return generate_password_hash(code, method=method)


def check_otp(otp_hash: str, candidate: str) -> bool:
    # check_password_hash compares with hmac.compare_digest
    return check_password_hash(otp_hash, candidate)


def is_valid_otp_format(value) -> bool:
    return isinstance(value, str) and OTP_PATTERN.fullmatch(value) is not None


def issue_otp(now: Optional[datetime] = None) -> IssuedOtp:
    now = now or utcnow()
    ttl = current_app.config.get("OTP_TTL_MINUTES", 30)
    attempts = current_app.config.get("OTP_MAX_ATTEMPTS", 3)
    code = generate_otp()
    return IssuedOtp(
        plaintext=code,
        otp_hash=hash_otp(code),
        expires_at=now + timedelta(minutes=ttl),
        attempts=attempts,
    )
