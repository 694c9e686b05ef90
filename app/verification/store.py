from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any

from app.verification.types import BookingToken, RecordStatus, TokenStatus, VerificationRecord


class RecordStore(ABC):
    """Keyed storage for verification records and booking tokens.

    Every mutation is a compare-and-set on `version`: `conditional_update_*`
    applies `changes` only if the stored version still equals
    `expected_version`, bumps the version, and returns the new row. A lost race
    returns None and the caller re-reads.
    """

    # verification records

    @abstractmethod
    def get_record(self, record_id: str) -> VerificationRecord | None: ...

    @abstractmethod
    def append_record(self, record: VerificationRecord) -> list[VerificationRecord]:
        """Supersede PENDING records for the subject and insert `record` in one write.

        Returns the records that were superseded.
        """

    @abstractmethod
    def conditional_update_record(
        self, record_id: str, expected_version: int, changes: dict[str, Any]
    ) -> VerificationRecord | None: ...

    @abstractmethod
    def records_for_subject(self, subject_key: str) -> list[VerificationRecord]:
        """Oldest first."""

    @abstractmethod
    def pending_records_due(self, now: datetime) -> list[VerificationRecord]: ...

    # booking tokens

    @abstractmethod
    def get_token(self, token_id: str) -> BookingToken | None: ...

    @abstractmethod
    def append_token(
        self, token: BookingToken, *, revoke_live_by: str | None = None
    ) -> list[BookingToken]:
        """Insert `token`; with `revoke_live_by`, revoke the subject's live tokens in the same write.

        Returns the tokens that were revoked.
        """

    @abstractmethod
    def conditional_update_token(
        self, token_id: str, expected_version: int, changes: dict[str, Any]
    ) -> BookingToken | None: ...

    @abstractmethod
    def tokens_for_subject(self, subject_key: str) -> list[BookingToken]:
        """Oldest first."""

    @abstractmethod
    def live_tokens_due(self, now: datetime) -> list[BookingToken]: ...


class InMemoryRecordStore(RecordStore):
    """Single-process store for tests and local runs. One lock guards both maps."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, VerificationRecord] = {}
        self._tokens: dict[str, BookingToken] = {}

    def get_record(self, record_id: str) -> VerificationRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def append_record(self, record: VerificationRecord) -> list[VerificationRecord]:
        with self._lock:
            if record.id in self._records:
                raise KeyError(f"duplicate record id {record.id}")
            superseded: list[VerificationRecord] = []
            for existing in list(self._records.values()):
                if existing.subject_key == record.subject_key and existing.status == RecordStatus.PENDING:
                    updated = replace(existing, status=RecordStatus.SUPERSEDED, version=existing.version + 1)
                    self._records[existing.id] = updated
                    superseded.append(updated)
            self._records[record.id] = record
            return superseded

    def conditional_update_record(
        self, record_id: str, expected_version: int, changes: dict[str, Any]
    ) -> VerificationRecord | None:
        with self._lock:
            current = self._records.get(record_id)
            if current is None or current.version != expected_version:
                return None
            updated = replace(current, **changes, version=expected_version + 1)
            self._records[record_id] = updated
            return updated

    def records_for_subject(self, subject_key: str) -> list[VerificationRecord]:
        with self._lock:
            rows = [r for r in self._records.values() if r.subject_key == subject_key]
        return sorted(rows, key=lambda r: r.created_at)

    def pending_records_due(self, now: datetime) -> list[VerificationRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.status == RecordStatus.PENDING and r.is_due(now)]

    def get_token(self, token_id: str) -> BookingToken | None:
        with self._lock:
            return self._tokens.get(token_id)

    def append_token(self, token: BookingToken, *, revoke_live_by: str | None = None) -> list[BookingToken]:
        with self._lock:
            if token.id in self._tokens:
                raise KeyError(f"duplicate token id {token.id}")
            revoked: list[BookingToken] = []
            if revoke_live_by is not None:
                for existing in list(self._tokens.values()):
                    if existing.subject_key == token.subject_key and existing.is_live:
                        updated = replace(
                            existing,
                            status=TokenStatus.REVOKED,
                            revoked_by=revoke_live_by,
                            version=existing.version + 1,
                        )
                        self._tokens[existing.id] = updated
                        revoked.append(updated)
            self._tokens[token.id] = token
            return revoked

    def conditional_update_token(
        self, token_id: str, expected_version: int, changes: dict[str, Any]
    ) -> BookingToken | None:
        with self._lock:
            current = self._tokens.get(token_id)
            if current is None or current.version != expected_version:
                return None
            updated = replace(current, **changes, version=expected_version + 1)
            self._tokens[token_id] = updated
            return updated

    def tokens_for_subject(self, subject_key: str) -> list[BookingToken]:
        with self._lock:
            rows = [t for t in self._tokens.values() if t.subject_key == subject_key]
        return sorted(rows, key=lambda t: t.issued_at)

    def live_tokens_due(self, now: datetime) -> list[BookingToken]:
        with self._lock:
            return [t for t in self._tokens.values() if t.is_live and t.is_due(now)]
