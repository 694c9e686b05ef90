from __future__ import annotations

import hmac
import os

from flask import Blueprint, current_app, jsonify, request

from app.utils.auth import ADMIN_ROLES, create_access_token, get_current_user, require_roles
from app.utils.errors import ApiError
from app.utils.validators import require_json, validate_email

auth_bp = Blueprint("auth", __name__)


@auth_bp.post("/service-token")
def service_token():
    """Mint an admin JWT for the recruiting console or scripts. Requires BOOTSTRAP_TOKEN."""
    bootstrap_token = str(os.getenv("BOOTSTRAP_TOKEN", "") or "").strip()
    if not bootstrap_token:
        raise ApiError("FORBIDDEN", "Token minting is disabled", status=403)

    provided = str(request.headers.get("X-Bootstrap-Token") or "").strip()
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), bootstrap_token.encode("utf-8")):
        raise ApiError("FORBIDDEN", "Invalid bootstrap token", status=403)

    body = require_json()
    email = validate_email(body.get("email"))
    role = str(body.get("role") or "ADMIN").strip().upper()
    if role not in ADMIN_ROLES:
        raise ApiError("BAD_REQUEST", "Unknown role", status=400, details={"allowed": ADMIN_ROLES})

    token = create_access_token(current_app, subject=email, email=email, role=role)
    return jsonify({"success": True, "data": {"token": token, "role": role}}), 201


@auth_bp.get("/me")
@require_roles(ADMIN_ROLES)
def me():
    return jsonify({"success": True, "data": get_current_user()})
