from __future__ import annotations

from flask import Blueprint, current_app, g, redirect, render_template, url_for

from app.utils.datetime import to_display_tz
from app.verification.factory import get_orchestrator

booking_bp = Blueprint("booking", __name__)


@booking_bp.get("/booking/<token_id>")
def confirm(token_id: str):
    # Mail scanners prefetch this URL; it must never redeem.
    token = get_orchestrator(current_app).view_booking(token_id, trace_id=g.request_id)
    subject = token.subject
    return render_template(
        "booking/confirm.html",
        brand=subject.brand,
        position=subject.position,
        expires_at=to_display_tz(token.expires_at, current_app.config["CFG"].TIMEZONE_DISPLAY),
        redeem_url=url_for("booking.redeem", token_id=token_id),
    )


@booking_bp.post("/booking/<token_id>/redeem")
def redeem(token_id: str):
    token = get_orchestrator(current_app).redeem_booking(token_id, trace_id=g.request_id)
    return redirect(token.destination_url, code=303)
