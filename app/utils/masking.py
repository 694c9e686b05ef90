from __future__ import annotations

import secrets
from urllib.parse import urlsplit


def mask_email(email: str) -> str:
    s = str(email or "").strip().lower()
    if "@" not in s:
        return "***"
    local, domain = s.split("@", 1)
    if not local or not domain:
        return "***"
    return f"{local[:2]}***@{domain}"


def mask_subject(canonical_subject: str) -> str:
    """`BRAND|email|position` with the email masked."""
    parts = str(canonical_subject or "").split("|", 2)
    if len(parts) != 3:
        return "***"
    brand, identity, position = parts
    return f"{brand}|{mask_email(identity)}|{position}"


def mask_url(url: str) -> str:
    s = str(url or "").strip()
    if not s:
        return ""
    host = urlsplit(s).netloc or "?"
    return f"{host}/...{s[-8:]}"


def new_trace_id() -> str:
    return f"tr-{secrets.token_hex(8)}"
