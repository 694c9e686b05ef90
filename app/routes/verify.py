from __future__ import annotations

from flask import Blueprint, current_app, g, render_template, request

from app.utils.datetime import to_display_tz
from app.verification.errors import InvalidCode
from app.verification.factory import get_orchestrator
from app.verification.signed_link import PARAM_BRAND, PARAM_IDENTITY, PARAM_POSITION, PARAM_SIGNATURE, PARAM_TIMESTAMP

verify_bp = Blueprint("verify", __name__)

_LINK_PARAMS = (PARAM_BRAND, PARAM_IDENTITY, PARAM_POSITION, PARAM_TIMESTAMP, PARAM_SIGNATURE)


def _link_params(source) -> dict[str, str]:
    return {k: str(source.get(k) or "") for k in _LINK_PARAMS}


def _display(dt) -> str:
    return to_display_tz(dt, current_app.config["CFG"].TIMEZONE_DISPLAY)


@verify_bp.get("/verify")
def open_link():
    opened = get_orchestrator(current_app).open_link(request.args, trace_id=g.request_id)
    subject = opened.link.subject
    return render_template(
        "verify/link.html",
        name=opened.candidate.get("name") or "",
        brand=subject.brand,
        position=subject.position,
        link_params=_link_params(request.args),
    )


@verify_bp.post("/verify/request-code")
def request_code():
    params = _link_params(request.form)
    sent = get_orchestrator(current_app).request_code(params, trace_id=g.request_id)
    return render_template(
        "verify/code.html",
        record_id=sent.record_id,
        sent_to=sent.sent_to,
        delivered=sent.delivered,
        expires_at=_display(sent.expires_at),
        link_params=params,
        error=None,
    )


@verify_bp.get("/verify/code")
def code_form():
    record_id = str(request.args.get("rid") or "").strip()
    return render_template(
        "verify/code.html",
        record_id=record_id,
        sent_to="",
        delivered=True,
        expires_at="",
        link_params=None,
        error=None,
    )


@verify_bp.post("/verify/code")
def submit_code():
    record_id = str(request.form.get("rid") or "").strip()
    code = str(request.form.get("code") or "").strip()
    try:
        accepted = get_orchestrator(current_app).submit_code(record_id, code, trace_id=g.request_id)
    except InvalidCode as e:
        return (
            render_template(
                "verify/code.html",
                record_id=record_id,
                sent_to="",
                delivered=True,
                expires_at="",
                link_params=None,
                error=e.message,
            ),
            e.status,
        )
    return render_template(
        "verify/verified.html",
        access_url=accepted.access_url,
        delivered=accepted.delivered,
        expires_at=_display(accepted.token.expires_at),
    )
