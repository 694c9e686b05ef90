from __future__ import annotations

import re
from typing import Any

from flask import request

from app.utils.errors import ApiError

_EMAIL_RE = re.compile(r"^[^@\s|]+@[^@\s|]+\.[^@\s|]+$")
_BRAND_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.&-]*$")


def require_json() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object", status=400)
    return body


def validate_email(value: Any) -> str:
    email = str(value or "").strip().lower()
    if not email or not _EMAIL_RE.match(email):
        raise ApiError("BAD_REQUEST", "Invalid email", status=400)
    return email


def validate_brand(value: str) -> str:
    if not _BRAND_RE.match(value):
        raise ApiError("BAD_REQUEST", "Invalid brand", status=400)
    return value


def require_str(body: dict[str, Any], field: str, *, max_len: int = 500) -> str:
    value = " ".join(str(body.get(field) or "").split())
    if not value:
        raise ApiError("BAD_REQUEST", f"{field} is required", status=400)
    if len(value) > max_len:
        raise ApiError("BAD_REQUEST", f"{field} is too long", status=400)
    return value


def subject_fields(body: dict[str, Any]) -> tuple[str, str, str]:
    """(identity, brand, position) from an admin request body."""
    return (
        validate_email(body.get("email")),
        validate_brand(require_str(body, "brand", max_len=64)),
        require_str(body, "position"),
    )
