from __future__ import annotations

from flask import Flask, request

from app.utils.rate_limiter import InMemoryRateLimiter

_limiter = InMemoryRateLimiter()

# Candidate endpoints that mint codes or burn credentials.
_VERIFY_PREFIXES = ("/verify", "/booking")


def client_ip(trust_proxy: bool) -> str:
    ip = request.headers.get("X-Forwarded-For", "") if trust_proxy else ""
    ip = ip or request.remote_addr or ""
    if ip and "," in ip:
        ip = ip.split(",", 1)[0].strip()
    return ip


def init_rate_limiting(app: Flask) -> None:
    cfg = app.config["CFG"]
    app.extensions["rate_limiter"] = _limiter

    @app.before_request
    def _rate_limit():
        path = request.path or ""
        if path in {"/health", "/version"}:
            return None

        ip = client_ip(cfg.TRUST_PROXY_HEADERS)

        if request.method == "POST" and path.startswith(_VERIFY_PREFIXES):
            _limiter.check(f"{ip}:VERIFY", cfg.RATE_LIMIT_VERIFY)
            return None

        if path.startswith("/api/v1/"):
            _limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
            _limiter.check(f"{ip}:PATH:{path}", cfg.RATE_LIMIT_DEFAULT)
            return None

        _limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        return None
