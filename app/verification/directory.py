from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable

import requests
from cachetools import TTLCache

from app.utils.masking import mask_email
from app.verification.errors import DirectoryUnavailable, NotConfigured
from app.verification.types import SubjectKey

log = logging.getLogger(__name__)

SMARTSHEET_API_BASE = "https://api.smartsheet.com/2.0"


@dataclass(frozen=True)
class DirectoryMatch:
    exact_match: bool
    attributes: dict[str, Any] = field(default_factory=dict)
    resolved_destination: str | None = None

    @classmethod
    def none(cls) -> "DirectoryMatch":
        return cls(exact_match=False)


class CandidateDirectory(ABC):
    """Read-only candidate lookup. Callers only learn "exact match" or "no match"."""

    @abstractmethod
    def lookup(self, subject: SubjectKey) -> DirectoryMatch: ...


def _same_identity(a: str, b: str) -> bool:
    return str(a or "").strip().lower() == str(b or "").strip().lower()


def _same_position(a: str, b: str) -> bool:
    return " ".join(str(a or "").split()) == " ".join(str(b or "").split())


class StaticDirectory(CandidateDirectory):
    """Candidates from a list of dicts with `email`, `brand`, `position` and optional
    `name`, `resolution_key`, `destination_url`."""

    def __init__(self, entries: Iterable[dict[str, Any]] = ()):
        self._entries = [dict(e) for e in entries]

    @classmethod
    def from_json(cls, raw: str) -> "StaticDirectory":
        raw = str(raw or "").strip()
        if not raw:
            return cls()
        if not raw.startswith("["):
            with open(raw, encoding="utf-8") as fh:
                raw = fh.read()
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("DIRECTORY_STATIC_JSON must be a JSON list")
        return cls(data)

    def add(self, entry: dict[str, Any]) -> None:
        self._entries.append(dict(entry))

    def lookup(self, subject: SubjectKey) -> DirectoryMatch:
        matches = [
            e
            for e in self._entries
            if _same_identity(e.get("email"), subject.identity)
            and str(e.get("brand") or "").strip().upper() == subject.brand.upper()
            and _same_position(e.get("position"), subject.position)
        ]
        if len(matches) != 1:
            return DirectoryMatch.none()
        entry = matches[0]
        return DirectoryMatch(
            exact_match=True,
            attributes={k: v for k, v in entry.items() if k != "destination_url"},
            resolved_destination=str(entry.get("destination_url") or "").strip() or None,
        )


class SmartsheetDirectory(CandidateDirectory):
    """Looks candidates up across every sheet configured for the brand.

    A subject is an exact match only when each configured sheet has a row whose
    email and position columns both match.
    """

    def __init__(
        self,
        *,
        api_token: str,
        sheets_by_brand: dict[str, list[str]],
        email_column: str = "Email",
        position_column: str = "Text For Email",
        name_column: str = "Name",
        link_column: str = "Position Link",
        resolution_column: str = "Client Link",
        cache_seconds: int = 60,
        timeout_seconds: int = 15,
        session: requests.Session | None = None,
    ):
        self._api_token = str(api_token or "").strip()
        self._sheets = {k.upper(): list(v) for k, v in (sheets_by_brand or {}).items()}
        self._email_column = email_column
        self._position_column = position_column
        self._name_column = name_column
        self._link_column = link_column
        self._resolution_column = resolution_column
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._cache: TTLCache = TTLCache(maxsize=64, ttl=max(1, cache_seconds))
        self._cache_lock = threading.Lock()

    def _fetch_sheet(self, sheet_id: str) -> dict[str, Any]:
        with self._cache_lock:
            cached = self._cache.get(sheet_id)
        if cached is not None:
            return cached

        url = f"{SMARTSHEET_API_BASE}/sheets/{sheet_id}"
        try:
            resp = self._session.get(
                url,
                headers={"Authorization": f"Bearer {self._api_token}", "Content-Type": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            log.warning("smartsheet request failed sheet=%s err=%s", sheet_id, type(e).__name__)
            raise DirectoryUnavailable(details={"sheetId": sheet_id}) from e

        if resp.status_code != 200:
            log.warning("smartsheet api error sheet=%s status=%s", sheet_id, resp.status_code)
            raise DirectoryUnavailable(details={"sheetId": sheet_id, "status": resp.status_code})

        try:
            data = resp.json()
        except ValueError as e:
            raise DirectoryUnavailable(details={"sheetId": sheet_id, "reason": "invalid_json"}) from e

        with self._cache_lock:
            self._cache[sheet_id] = data
        return data

    def _find_row(self, sheet: dict[str, Any], sheet_id: str, subject: SubjectKey) -> dict[str, Any] | None:
        titles = {c.get("id"): str(c.get("title") or "") for c in sheet.get("columns") or []}
        if self._email_column not in titles.values() or self._position_column not in titles.values():
            raise NotConfigured(details={"sheetId": sheet_id, "reason": "columns_missing"})

        for row in sheet.get("rows") or []:
            values: dict[str, str] = {}
            for cell in row.get("cells") or []:
                title = titles.get(cell.get("columnId"))
                if title:
                    values[title] = str(cell.get("displayValue") or cell.get("value") or "").strip()
            if _same_identity(values.get(self._email_column), subject.identity) and _same_position(
                values.get(self._position_column), subject.position
            ):
                values["_row_id"] = str(row.get("id") or "")
                return values
        return None

    def lookup(self, subject: SubjectKey) -> DirectoryMatch:
        if not self._api_token:
            raise NotConfigured(details={"reason": "smartsheet_token_missing"})
        sheet_ids = self._sheets.get(subject.brand.upper()) or []
        if not sheet_ids:
            raise NotConfigured(details={"reason": "smartsheet_sheet_missing", "brand": subject.brand})

        rows: list[dict[str, Any]] = []
        for sheet_id in sheet_ids:
            row = self._find_row(self._fetch_sheet(sheet_id), sheet_id, subject)
            if row is None:
                log.info("smartsheet no exact match brand=%s email=%s sheet=%s", subject.brand, mask_email(subject.identity), sheet_id)
                return DirectoryMatch.none()
            rows.append(row)

        first = rows[0]
        return DirectoryMatch(
            exact_match=True,
            attributes={
                "name": first.get(self._name_column, ""),
                "resolution_key": first.get(self._resolution_column, ""),
                "row_id": first.get("_row_id", ""),
            },
            resolved_destination=first.get(self._link_column) or None,
        )
