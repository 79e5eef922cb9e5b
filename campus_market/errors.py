"""Error taxonomy for the marketplace.

Validation and domain errors are raised by services and turned into the JSON
error envelope by the handlers registered in ``campus_market.app``. Anything
that is not a ``MarketError`` is treated as unexpected and answered with a
generic 500.
"""
from typing import Optional


class MarketError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code

    def to_dict(self) -> dict:
        body = {"status": "error", "message": self.message}
        if self.code:
            body["code"] = self.code
        return body


class ValidationError(MarketError):
    status_code = 400


class NotFound(MarketError):
    status_code = 404


class Forbidden(MarketError):
    status_code = 403


class Conflict(MarketError):
    status_code = 400


class OtpRejected(Conflict):
    """A verification attempt that did not complete the order.

    Only the reason and the remaining attempt count are exposed.
    """

    def __init__(self, message: str, code: str, attempts_remaining: Optional[int] = None):
        super().__init__(message, code=code)
        self.attempts_remaining = attempts_remaining

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.attempts_remaining is not None:
            body["attemptsRemaining"] = self.attempts_remaining
        return body


class RetryableError(MarketError):
    status_code = 500
