from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from app.db import ping_db
from app.utils.datetime import iso_utc_now

core_bp = Blueprint("core", __name__)


@core_bp.get("/health")
def health():
    cfg = current_app.config["CFG"]
    db_ok = ping_db(current_app.extensions.get("db_engine"))
    verification_ok = current_app.extensions.get("verification") is not None
    ok = db_ok and verification_ok

    # Backends are reported by name only; secrets and sheet ids stay out.
    return (
        jsonify(
            {
                "status": "ok" if ok else "degraded",
                "time": iso_utc_now(),
                "version": cfg.APP_VERSION,
                "db": "ok" if db_ok else "error",
                "verification": "ok" if verification_ok else "error",
                "backends": {
                    "directory": cfg.DIRECTORY_BACKEND,
                    "resolver": cfg.RESOLVER_BACKEND,
                    "mail": cfg.MAIL_BACKEND,
                    "audit": cfg.AUDIT_BACKEND,
                },
            }
        ),
        200 if ok else 503,
    )


@core_bp.get("/version")
def version():
    cfg = current_app.config["CFG"]
    return jsonify({"version": cfg.APP_VERSION, "env": cfg.ENV, "time": iso_utc_now()})
