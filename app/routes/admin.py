from __future__ import annotations

from datetime import datetime
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.utils.auth import ADMIN_ROLES, current_actor, require_roles
from app.utils.datetime import iso_utc
from app.utils.errors import ApiError
from app.utils.validators import require_json, subject_fields
from app.verification.factory import get_orchestrator
from app.verification.types import SubjectKey

admin_bp = Blueprint("admin", __name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return iso_utc(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _ok(data: Any, status: int = 200):
    return jsonify({"success": True, "data": _jsonable(data)}), status


def _subject_from(source: dict[str, Any]) -> SubjectKey:
    identity, brand, position = subject_fields(source)
    subject = SubjectKey.of(identity, brand, position)
    allowed = current_app.config["CFG"].ALLOWED_BRANDS
    if allowed and subject.brand not in allowed:
        raise ApiError("BAD_REQUEST", "Unknown brand", status=400)
    return subject


@admin_bp.post("/signed-links")
@require_roles(ADMIN_ROLES)
def issue_signed_link():
    body = require_json()
    subject = _subject_from(body)
    issued = get_orchestrator(current_app).issue_link(
        subject,
        actor=current_actor(),
        send_email=bool(body.get("sendEmail")),
        trace_id=g.request_id,
    )
    return _ok({"url": issued.url, "timestamp": issued.link.timestamp, "delivered": issued.delivered}, 201)


@admin_bp.post("/tokens/reissue")
@require_roles(ADMIN_ROLES)
def reissue_token():
    subject = _subject_from(require_json())
    result = get_orchestrator(current_app).reissue(subject, actor=current_actor(), trace_id=g.request_id)
    return _ok(
        {
            "tokenPrefix": result.token.id[:8],
            "accessUrl": result.access_url,
            "expiresAt": result.token.expires_at,
            "revokedCount": result.revoked_count,
            "delivered": result.delivered,
        },
        201,
    )


@admin_bp.post("/tokens/revoke")
@require_roles(ADMIN_ROLES)
def revoke_tokens():
    subject = _subject_from(require_json())
    count = get_orchestrator(current_app).revoke(subject, actor=current_actor(), trace_id=g.request_id)
    return _ok({"revokedCount": count})


@admin_bp.get("/subjects/history")
@require_roles(ADMIN_ROLES)
def subject_history():
    subject = _subject_from(dict(request.args))
    return _ok(get_orchestrator(current_app).history(subject))


@admin_bp.post("/verifications/<record_id>/unlock")
@require_roles(ADMIN_ROLES)
def unlock_verification(record_id: str):
    record = get_orchestrator(current_app).unlock(record_id, actor=current_actor(), trace_id=g.request_id)
    return _ok({"id": record.id, "status": record.status, "lockOverride": record.lock_override})
