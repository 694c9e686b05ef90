from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.utils.datetime import ensure_utc, utc_now
from app.utils.masking import mask_subject
from app.verification.errors import (
    AlreadyUsed,
    ConcurrentUpdate,
    Expired,
    InvalidCode,
    Locked,
    NotFound,
    Superseded,
    VerificationError,
)
from app.verification.settings import VerificationSettings
from app.verification.store import RecordStore
from app.verification.types import UNLOCK_OVERRIDE, Event, RecordStatus, SubjectKey, VerificationRecord

log = logging.getLogger(__name__)

CODE_MIN = 100_000
CODE_MAX = 999_999


def generate_code() -> str:
    """Uniform over 100000..999999."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


@dataclass(frozen=True)
class IssuedCode:
    record: VerificationRecord
    code: str
    events: list[Event] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


@dataclass(frozen=True)
class VerifiedCode:
    record: VerificationRecord
    events: list[Event] = field(default_factory=list)

    @property
    def bound_resource(self) -> str | None:
        return self.record.bound_resource


class OtpEngine:
    """Six-digit codes bound to one subject, with expiry and an attempt ceiling.

    Codes are stored as HMAC(pepper, "<record id>:<code>"), never in plaintext.
    All transitions go through `conditional_update_record`; on a lost race the
    record is re-read and the checks run again.
    """

    def __init__(self, store: RecordStore, settings: VerificationSettings):
        if not settings.code_pepper:
            raise ValueError("code pepper is required")
        self._store = store
        self._pepper = settings.code_pepper.encode("utf-8")
        self._expiry = timedelta(minutes=settings.otp_expiry_minutes)
        self._max_attempts = settings.otp_max_attempts
        self._retries = max(1, settings.cas_retries)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _hash(self, record_id: str, code: str) -> str:
        return hmac.new(self._pepper, f"{record_id}:{code}".encode("utf-8"), hashlib.sha256).hexdigest()

    def create_code(
        self,
        subject: SubjectKey,
        bound_resource: str | None = None,
        now: datetime | None = None,
        trace_id: str = "",
    ) -> IssuedCode:
        now = ensure_utc(now) or utc_now()
        record_id = secrets.token_urlsafe(24)
        code = generate_code()
        record = VerificationRecord(
            id=record_id,
            subject_key=subject.canonical,
            code_hash=self._hash(record_id, code),
            status=RecordStatus.PENDING,
            attempts=0,
            created_at=now,
            expires_at=now + self._expiry,
            bound_resource=bound_resource or None,
            trace_id=trace_id,
        )
        superseded = self._store.append_record(record)

        events = [Event("CODE_SUPERSEDED", {"recordId": r.id[:8]}) for r in superseded]
        events.append(Event("CODE_ISSUED", {"recordId": record_id[:8], "expiresAt": record.expires_at}))
        log.info(
            "otp issued subject=%s record=%s superseded=%s trace=%s",
            mask_subject(subject.canonical),
            record_id[:8],
            len(superseded),
            trace_id,
        )
        return IssuedCode(record=record, code=code, events=events)

    def validate_code(self, record_id: str, submitted: str, now: datetime | None = None) -> VerifiedCode:
        now = ensure_utc(now) or utc_now()
        submitted = str(submitted or "").strip()

        for _ in range(self._retries):
            record = self._store.get_record(str(record_id or ""))
            if record is None:
                raise NotFound("We couldn't find this code. Please request a new one.")

            self._reject_terminal(record)

            if record.is_due(now):
                if self._transition(record, {"status": RecordStatus.EXPIRED}) is None:
                    continue
                raise Expired(
                    "This code has expired. Please request a new one.",
                    events=[Event("CODE_EXPIRED", {"recordId": record.id[:8]})],
                )

            if record.attempts >= self._max_attempts:
                if self._transition(record, {"status": RecordStatus.LOCKED}) is None:
                    continue
                raise Locked(events=[Event("CODE_LOCKED", {"recordId": record.id[:8], "attempts": record.attempts})])

            if hmac.compare_digest(record.code_hash, self._hash(record.id, submitted)):
                verified = self._transition(record, {"status": RecordStatus.VERIFIED, "verified_at": now})
                if verified is None:
                    continue
                return VerifiedCode(
                    record=verified,
                    events=[Event("CODE_VERIFIED", {"recordId": record.id[:8], "attempts": record.attempts})],
                )

            attempts = record.attempts + 1
            changes: dict = {"attempts": attempts}
            if attempts >= self._max_attempts:
                changes["status"] = RecordStatus.LOCKED
            updated = self._transition(record, changes)
            if updated is None:
                continue

            invalid = Event("CODE_INVALID", {"recordId": record.id[:8], "attempts": attempts})
            if updated.status == RecordStatus.LOCKED:
                raise Locked(events=[invalid, Event("CODE_LOCKED", {"recordId": record.id[:8], "attempts": attempts})])
            raise InvalidCode(self._max_attempts - attempts, events=[invalid])

        raise ConcurrentUpdate(details={"recordId": str(record_id)[:8]})

    @staticmethod
    def _reject_terminal(record: VerificationRecord) -> None:
        status = record.status
        if status == RecordStatus.VERIFIED:
            raise AlreadyUsed("This code has already been used.")
        if status == RecordStatus.SUPERSEDED:
            raise Superseded()
        if status == RecordStatus.EXPIRED:
            raise Expired("This code has expired. Please request a new one.")
        if status == RecordStatus.LOCKED:
            raise Locked()
        if status != RecordStatus.PENDING:
            raise VerificationError(details={"status": status})

    def _transition(self, record: VerificationRecord, changes: dict) -> VerificationRecord | None:
        return self._store.conditional_update_record(record.id, record.version, changes)

    def unlock(self, record_id: str, actor: str) -> VerificationRecord:
        """Let a locked-out candidate request a fresh code. The record itself stays LOCKED."""
        for _ in range(self._retries):
            record = self._store.get_record(str(record_id or ""))
            if record is None:
                raise NotFound()
            if record.status != RecordStatus.LOCKED:
                raise VerificationError(
                    "Only locked codes can be unlocked.", details={"status": record.status, "actor": actor}
                )
            if record.lock_override == UNLOCK_OVERRIDE:
                return record
            updated = self._transition(record, {"lock_override": UNLOCK_OVERRIDE})
            if updated is not None:
                log.info("otp unlock record=%s actor=%s", record.id[:8], actor)
                return updated
        raise ConcurrentUpdate(details={"recordId": str(record_id)[:8]})

    def get(self, record_id: str) -> VerificationRecord | None:
        return self._store.get_record(str(record_id or ""))

    def latest_for_subject(self, subject: SubjectKey) -> VerificationRecord | None:
        records = self._store.records_for_subject(subject.canonical)
        return records[-1] if records else None

    def history(self, subject: SubjectKey) -> list[VerificationRecord]:
        return self._store.records_for_subject(subject.canonical)

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Advisory: lazy checks in `validate_code` already enforce expiry."""
        now = ensure_utc(now) or utc_now()
        count = 0
        for record in self._store.pending_records_due(now):
            if self._transition(record, {"status": RecordStatus.EXPIRED}) is not None:
                count += 1
        return count
