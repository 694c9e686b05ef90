from __future__ import annotations

import re
import time

from flask import Flask, g, request

from app.utils.masking import new_trace_id

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _incoming_request_id() -> str | None:
    incoming = str(request.headers.get("X-Request-ID") or "").strip()
    return incoming if _SAFE_ID_RE.match(incoming) else None


def init_request_id(app: Flask) -> None:
    @app.before_request
    def _set_request_id():
        # Also used as the audit trace id for everything this request does.
        g.request_id = _incoming_request_id() or new_trace_id()
        g.start_ts = time.monotonic()

    @app.after_request
    def _echo_request_id(resp):
        if getattr(g, "request_id", ""):
            resp.headers["X-Request-ID"] = g.request_id
        return resp
