from __future__ import annotations

from flask import Flask, request

# Pages that carry signed links, codes or booking tokens.
_CANDIDATE_PREFIXES = ("/verify", "/booking")

# Plain server-rendered forms: no scripts, no framing, no third-party assets.
_CANDIDATE_CSP = "default-src 'none'; style-src 'unsafe-inline'; frame-ancestors 'none'"


def _is_https() -> bool:
    return request.is_secure or str(request.headers.get("X-Forwarded-Proto") or "").lower() == "https"


def init_security_headers(app: Flask) -> None:
    cfg = app.config["CFG"]

    @app.after_request
    def _headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")

        if (request.path or "").startswith(_CANDIDATE_PREFIXES):
            resp.headers["Cache-Control"] = "no-store"
            resp.headers["Pragma"] = "no-cache"
            resp.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            resp.headers.setdefault("Content-Security-Policy", _CANDIDATE_CSP)

        if cfg.IS_PRODUCTION and _is_https():
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return resp
