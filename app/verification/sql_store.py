from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import BookingTokenRow, VerificationRecordRow
from app.utils.datetime import ensure_utc
from app.verification.errors import ConcurrentUpdate
from app.verification.store import RecordStore
from app.verification.types import BookingToken, RecordStatus, TokenStatus, VerificationRecord

log = logging.getLogger(__name__)

_RECORD_FIELDS = (
    "id",
    "subject_key",
    "code_hash",
    "status",
    "attempts",
    "created_at",
    "expires_at",
    "verified_at",
    "bound_resource",
    "lock_override",
    "trace_id",
    "version",
)
_TOKEN_FIELDS = (
    "id",
    "subject_key",
    "destination_url",
    "status",
    "issued_at",
    "expires_at",
    "confirmed_at",
    "used_at",
    "issued_by",
    "revoked_by",
    "verification_id",
    "trace_id",
    "version",
)
_DATETIME_FIELDS = {"created_at", "expires_at", "verified_at", "issued_at", "confirmed_at", "used_at"}


def _from_row(row: Any, fields: tuple[str, ...], cls):
    values = {}
    for name in fields:
        value = getattr(row, name)
        values[name] = ensure_utc(value) if name in _DATETIME_FIELDS else value
    return cls(**values)


def _to_values(obj: Any, fields: tuple[str, ...]) -> dict[str, Any]:
    return {name: getattr(obj, name) for name in fields}


class SqlRecordStore(RecordStore):
    """RecordStore over SQLAlchemy.

    Compare-and-set is `UPDATE ... WHERE id = :id AND version = :expected`;
    a rowcount of zero means another writer got there first.
    """

    def __init__(self, session_factory: Callable[[], Session], *, insert_retries: int = 2):
        self._session_factory = session_factory
        self._insert_retries = max(1, insert_retries)

    # verification records

    def get_record(self, record_id: str) -> VerificationRecord | None:
        with self._session_factory() as db:
            row = db.get(VerificationRecordRow, record_id)
            return _from_row(row, _RECORD_FIELDS, VerificationRecord) if row else None

    def append_record(self, record: VerificationRecord) -> list[VerificationRecord]:
        for attempt in range(self._insert_retries):
            with self._session_factory() as db:
                try:
                    stale = db.execute(
                        select(VerificationRecordRow).where(
                            VerificationRecordRow.subject_key == record.subject_key,
                            VerificationRecordRow.status == RecordStatus.PENDING,
                        )
                    ).scalars().all()
                    superseded: list[VerificationRecord] = []
                    for row in stale:
                        res = db.execute(
                            update(VerificationRecordRow)
                            .where(
                                VerificationRecordRow.id == row.id,
                                VerificationRecordRow.version == row.version,
                                VerificationRecordRow.status == RecordStatus.PENDING,
                            )
                            .values(status=RecordStatus.SUPERSEDED, version=row.version + 1)
                            .execution_options(synchronize_session=False)
                        )
                        if res.rowcount == 1:
                            current = _from_row(row, _RECORD_FIELDS, VerificationRecord)
                            superseded.append(replace(current, status=RecordStatus.SUPERSEDED, version=row.version + 1))
                    db.add(VerificationRecordRow(**_to_values(record, _RECORD_FIELDS)))
                    db.commit()
                    return superseded
                except IntegrityError:
                    # A concurrent create for the same subject won the partial unique index.
                    db.rollback()
                    log.info("append_record retry subject_pending_conflict attempt=%s", attempt + 1)
        raise ConcurrentUpdate(details={"op": "append_record"})

    def conditional_update_record(
        self, record_id: str, expected_version: int, changes: dict[str, Any]
    ) -> VerificationRecord | None:
        return self._cas(VerificationRecordRow, _RECORD_FIELDS, VerificationRecord, record_id, expected_version, changes)

    def records_for_subject(self, subject_key: str) -> list[VerificationRecord]:
        with self._session_factory() as db:
            rows = db.execute(
                select(VerificationRecordRow)
                .where(VerificationRecordRow.subject_key == subject_key)
                .order_by(VerificationRecordRow.created_at.asc())
            ).scalars().all()
            return [_from_row(r, _RECORD_FIELDS, VerificationRecord) for r in rows]

    def pending_records_due(self, now: datetime) -> list[VerificationRecord]:
        with self._session_factory() as db:
            rows = db.execute(
                select(VerificationRecordRow).where(
                    VerificationRecordRow.status == RecordStatus.PENDING,
                    VerificationRecordRow.expires_at < now,
                )
            ).scalars().all()
            return [_from_row(r, _RECORD_FIELDS, VerificationRecord) for r in rows]

    # booking tokens

    def get_token(self, token_id: str) -> BookingToken | None:
        with self._session_factory() as db:
            row = db.get(BookingTokenRow, token_id)
            return _from_row(row, _TOKEN_FIELDS, BookingToken) if row else None

    def append_token(self, token: BookingToken, *, revoke_live_by: str | None = None) -> list[BookingToken]:
        with self._session_factory() as db:
            revoked: list[BookingToken] = []
            if revoke_live_by is not None:
                live = db.execute(
                    select(BookingTokenRow).where(
                        BookingTokenRow.subject_key == token.subject_key,
                        BookingTokenRow.status.in_(sorted(TokenStatus.LIVE)),
                    )
                ).scalars().all()
                for row in live:
                    res = db.execute(
                        update(BookingTokenRow)
                        .where(BookingTokenRow.id == row.id, BookingTokenRow.version == row.version)
                        .values(status=TokenStatus.REVOKED, revoked_by=revoke_live_by, version=row.version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        # Redeemed or revoked under us; abandon the whole reissue.
                        db.rollback()
                        raise ConcurrentUpdate(details={"op": "append_token", "token": row.id[:8]})
                    current = _from_row(row, _TOKEN_FIELDS, BookingToken)
                    revoked.append(
                        replace(current, status=TokenStatus.REVOKED, revoked_by=revoke_live_by, version=row.version + 1)
                    )
            db.add(BookingTokenRow(**_to_values(token, _TOKEN_FIELDS)))
            db.commit()
            return revoked

    def conditional_update_token(
        self, token_id: str, expected_version: int, changes: dict[str, Any]
    ) -> BookingToken | None:
        return self._cas(BookingTokenRow, _TOKEN_FIELDS, BookingToken, token_id, expected_version, changes)

    def tokens_for_subject(self, subject_key: str) -> list[BookingToken]:
        with self._session_factory() as db:
            rows = db.execute(
                select(BookingTokenRow)
                .where(BookingTokenRow.subject_key == subject_key)
                .order_by(BookingTokenRow.issued_at.asc())
            ).scalars().all()
            return [_from_row(r, _TOKEN_FIELDS, BookingToken) for r in rows]

    def live_tokens_due(self, now: datetime) -> list[BookingToken]:
        with self._session_factory() as db:
            rows = db.execute(
                select(BookingTokenRow).where(
                    BookingTokenRow.status.in_(sorted(TokenStatus.LIVE)),
                    BookingTokenRow.expires_at < now,
                )
            ).scalars().all()
            return [_from_row(r, _TOKEN_FIELDS, BookingToken) for r in rows]

    def _cas(self, model, fields, cls, row_id: str, expected_version: int, changes: dict[str, Any]):
        with self._session_factory() as db:
            res = db.execute(
                update(model)
                .where(model.id == row_id, model.version == expected_version)
                .values(**changes, version=expected_version + 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                db.rollback()
                return None
            db.commit()
            row = db.get(model, row_id)
            return _from_row(row, fields, cls) if row else None
