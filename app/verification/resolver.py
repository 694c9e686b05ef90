from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable
from urllib.parse import urlsplit

from sqlalchemy.orm import Session

from app.models import BookingDestination
from app.verification.errors import Inactive, NotConfigured
from app.verification.types import SubjectKey

_CL_CODE_RE = re.compile(r"CL\d+", re.IGNORECASE)
# Google appointment links copied while signed in carry `/u/<n>/`, which forces a login prompt.
_ACCOUNT_SEGMENT_RE = re.compile(r"/u/\d+/")
_BLOCKED_FRAGMENTS = ("script.google.com", "docs.google.com/forms")


@dataclass(frozen=True)
class Resolution:
    destination_url: str
    metadata: dict[str, Any] = field(default_factory=dict)


def extract_cl_code(text: str) -> str | None:
    m = _CL_CODE_RE.search(str(text or ""))
    return m.group(0).upper() if m else None


def resolution_key_for(subject: SubjectKey, hint: str | None = None) -> str | None:
    """`BRAND:CLnn` from a directory-provided hint, else from the position text."""
    code = extract_cl_code(hint or "") or extract_cl_code(subject.position)
    return f"{subject.brand}:{code}" if code else None


def normalize_destination_url(url: str) -> str:
    return _ACCOUNT_SEGMENT_RE.sub("/", str(url or "").strip(), count=1)


def validate_destination_url(url: str) -> str:
    """Normalized URL, or NotConfigured when it can't be sent to a candidate."""
    normalized = normalize_destination_url(url)
    if not normalized:
        raise NotConfigured(details={"reason": "empty_destination"})
    parts = urlsplit(normalized)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise NotConfigured(details={"reason": "bad_scheme"})
    lowered = normalized.lower()
    if any(fragment in lowered for fragment in _BLOCKED_FRAGMENTS):
        raise NotConfigured(details={"reason": "blocked_destination", "host": parts.netloc})
    return normalized


class BookingResolver(ABC):
    @abstractmethod
    def resolve(self, resolution_key: str) -> Resolution:
        """Raises NotConfigured for unknown keys and Inactive for disabled ones."""


class StaticResolver(BookingResolver):
    def __init__(self, destinations: dict[str, dict[str, Any]] | None = None):
        self._destinations = {k.upper(): dict(v) for k, v in (destinations or {}).items()}

    @classmethod
    def from_entries(cls, entries: Iterable[dict[str, Any]]) -> "StaticResolver":
        return cls({str(e.get("resolution_key") or ""): e for e in entries if e.get("resolution_key")})

    def resolve(self, resolution_key: str) -> Resolution:
        entry = self._destinations.get(str(resolution_key or "").upper())
        if entry is None:
            raise NotConfigured(details={"resolutionKey": resolution_key})
        if not entry.get("active", True):
            raise Inactive(details={"resolutionKey": resolution_key})
        return Resolution(
            destination_url=str(entry.get("destination_url") or ""),
            metadata={k: v for k, v in entry.items() if k not in {"destination_url", "active"}},
        )


class SqlResolver(BookingResolver):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def resolve(self, resolution_key: str) -> Resolution:
        with self._session_factory() as db:
            row = db.get(BookingDestination, str(resolution_key or "").upper())
            if row is None:
                raise NotConfigured(details={"resolutionKey": resolution_key})
            if not row.active:
                raise Inactive(details={"resolutionKey": resolution_key})
            return Resolution(
                destination_url=row.destination_url or "",
                metadata={"recruiterName": row.recruiter_name, "recruiterEmail": row.recruiter_email},
            )
