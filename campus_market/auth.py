from functools import wraps
from typing import Optional

import jwt
from flask import current_app, g, request

from campus_market.utils.responses import err


def current_user_id() -> Optional[int]:
    """Resolve the caller from ``Authorization: Bearer <jwt>``.

    Tokens are issued by the identity service; we only check the signature and
    read the ``id`` (or ``sub``) claim.
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    token = auth.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(
            token,
            current_app.config["JWT_SECRET"],
            algorithms=[current_app.config.get("JWT_ALGO", "HS256")],
        )
    except jwt.PyJWTError:
        return None

    uid = payload.get("id", payload.get("sub"))
    try:
        return int(uid)
    except (TypeError, ValueError):
        return None


def require_auth(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not request.headers.get("Authorization", "").startswith("Bearer "):
            return err("No token, authorization denied", 401)
        uid = current_user_id()
        if uid is None:
            return err("Token is not valid", 401)
        g.user_id = uid
        return func(*args, **kwargs)

    return wrapper
