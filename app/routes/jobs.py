from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify

from app.utils.auth import ADMIN_ROLES, require_roles
from app.verification.factory import get_orchestrator

jobs_bp = Blueprint("jobs", __name__)


@jobs_bp.post("/expire-sweep")
@require_roles(ADMIN_ROLES, allow_internal=True)
def expire_sweep():
    result = get_orchestrator(current_app).sweep(trace_id=g.request_id)
    return jsonify({"success": True, "data": result})
