from __future__ import annotations

import functools
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

import jwt
from flask import current_app, g, request

from app.utils.errors import ApiError


_T = TypeVar("_T", bound=Callable[..., Any])

ADMIN_ROLES = ["ADMIN", "OWNER", "HR"]


def create_access_token(app, *, subject: str, email: str = "", role: str = "ADMIN") -> str:
    cfg = app.config["CFG"]
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(subject),
        "email": str(email or "").strip().lower(),
        "role": str(role or "").upper().strip(),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=cfg.JWT_EXP_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, cfg.JWT_SECRET, algorithm="HS256")


def _decode_token(token: str) -> dict[str, Any]:
    cfg = current_app.config["CFG"]
    try:
        return jwt.decode(token, cfg.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as e:
        raise ApiError("AUTH_INVALID", "Token expired", status=401) from e
    except jwt.InvalidTokenError as e:
        raise ApiError("AUTH_INVALID", "Invalid token", status=401) from e


def _bearer_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return ""


def get_current_user() -> dict[str, str]:
    token = _bearer_token()
    if not token:
        raise ApiError("AUTH_INVALID", "Missing bearer token", status=401)

    payload = _decode_token(token)
    sub = str(payload.get("sub") or "").strip()
    if not sub:
        raise ApiError("AUTH_INVALID", "Invalid token payload", status=401)

    email = str(payload.get("email") or "").strip().lower()
    role = str(payload.get("role") or "").upper().strip()
    return {"id": sub, "email": email, "role": role}


def current_actor() -> str:
    user = getattr(g, "current_user", None) or {}
    return str(user.get("email") or user.get("id") or "SYSTEM")


def has_internal_token() -> bool:
    expected = str(current_app.config["CFG"].INTERNAL_CRON_TOKEN or "").strip()
    provided = str(request.headers.get("X-Internal-Token") or "").strip()
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_roles(roles: list[str], *, allow_internal: bool = False) -> Callable[[_T], _T]:
    allowed = {str(r or "").upper().strip() for r in (roles or []) if str(r or "").strip()}

    def _decorator(fn: _T) -> _T:
        @functools.wraps(fn)
        def _wrapped(*args, **kwargs):
            if allow_internal and has_internal_token():
                g.current_user = {"id": "SYSTEM", "email": "", "role": "SYSTEM"}
                return fn(*args, **kwargs)

            user = get_current_user()
            if allowed and user["role"] not in allowed:
                raise ApiError("FORBIDDEN", "Insufficient role", status=403, details={"required": sorted(allowed)})
            g.current_user = user
            return fn(*args, **kwargs)

        return _wrapped  # type: ignore[return-value]

    return _decorator
