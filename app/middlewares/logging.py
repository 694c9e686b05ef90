from __future__ import annotations

import logging
import re
import time

from flask import Flask, g, request

from app.middlewares.rate_limit import client_ip
from app.utils.logging import log_event

# Booking token ids are bearer credentials; only their prefix reaches the logs.
_BOOKING_PATH_RE = re.compile(r"^(/booking/)([^/]{8})[^/]*")
_QUIET_PATHS = {"/health", "/version"}


def _safe_path(path: str) -> str:
    return _BOOKING_PATH_RE.sub(r"\1\2...", path or "")


def init_request_logging(app: Flask) -> None:
    logger = logging.getLogger("app.request")
    trust_proxy = app.config["CFG"].TRUST_PROXY_HEADERS

    @app.after_request
    def _log(resp):
        if request.path in _QUIET_PATHS and resp.status_code < 400:
            return resp

        start = getattr(g, "start_ts", None)
        latency_ms = int((time.monotonic() - start) * 1000) if isinstance(start, (int, float)) else None

        # Signed-link query strings carry the candidate email and MAC; never log them.
        log_event(
            logger,
            "request",
            level=logging.WARNING if resp.status_code >= 500 else logging.INFO,
            request_id=getattr(g, "request_id", ""),
            method=request.method,
            path=_safe_path(request.path),
            endpoint=request.endpoint or "",
            status=resp.status_code,
            latency_ms=latency_ms,
            ip=client_ip(trust_proxy),
        )
        return resp
