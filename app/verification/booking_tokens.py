from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.utils.datetime import ensure_utc, utc_now
from app.utils.masking import mask_subject, mask_url
from app.verification.errors import AlreadyUsed, ConcurrentUpdate, Expired, NotFound, Revoked, VerificationError
from app.verification.settings import VerificationSettings
from app.verification.store import RecordStore
from app.verification.types import BookingToken, Event, SubjectKey, TokenStatus

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenOutcome:
    token: BookingToken
    events: list[Event] = field(default_factory=list)

    @property
    def destination_url(self) -> str:
        return self.token.destination_url


@dataclass(frozen=True)
class RevokeOutcome:
    revoked: list[BookingToken]
    events: list[Event] = field(default_factory=list)

    @property
    def revoked_count(self) -> int:
        return len(self.revoked)


@dataclass(frozen=True)
class ReissueOutcome:
    token: BookingToken
    revoked: list[BookingToken]
    events: list[Event] = field(default_factory=list)

    @property
    def revoked_count(self) -> int:
        return len(self.revoked)


def _event(name: str, token: BookingToken, **extra) -> Event:
    return Event(name, {"tokenPrefix": token.id[:8], **extra})


class BookingTokenEngine:
    """Single-use booking links.

    `confirm_view` is the read path a mail scanner may hit and never burns the
    token; only `redeem` moves it to USED. Expiry is checked on every call
    before the requested operation.
    """

    def __init__(self, store: RecordStore, settings: VerificationSettings):
        self._store = store
        self._ttl = timedelta(hours=settings.token_expiry_hours)
        self._retries = max(1, settings.cas_retries)

    def _new_token(
        self,
        subject: SubjectKey,
        destination_url: str,
        issued_by: str,
        now: datetime,
        verification_id: str | None,
        trace_id: str,
    ) -> BookingToken:
        if not str(destination_url or "").strip():
            raise ValueError("destination_url is required")
        return BookingToken(
            id=secrets.token_urlsafe(32),
            subject_key=subject.canonical,
            destination_url=destination_url.strip(),
            status=TokenStatus.ISSUED,
            issued_at=now,
            expires_at=now + self._ttl,
            issued_by=str(issued_by or "SYSTEM"),
            verification_id=verification_id,
            trace_id=trace_id,
        )

    def issue(
        self,
        subject: SubjectKey,
        destination_url: str,
        issued_by: str,
        now: datetime | None = None,
        verification_id: str | None = None,
        trace_id: str = "",
    ) -> TokenOutcome:
        now = ensure_utc(now) or utc_now()
        token = self._new_token(subject, destination_url, issued_by, now, verification_id, trace_id)
        self._store.append_token(token)
        log.info(
            "token issued subject=%s token=%s dest=%s by=%s",
            mask_subject(token.subject_key),
            token.id[:8],
            mask_url(token.destination_url),
            token.issued_by,
        )
        return TokenOutcome(token=token, events=[_event("TOKEN_ISSUED", token, issuedBy=token.issued_by)])

    def confirm_view(self, token_id: str, now: datetime | None = None) -> TokenOutcome:
        now = ensure_utc(now) or utc_now()
        for _ in range(self._retries):
            token = self._load_live(token_id, now)
            if token is None:
                continue
            if token.status == TokenStatus.CONFIRMED:
                return TokenOutcome(token=token)
            confirmed = self._store.conditional_update_token(
                token.id, token.version, {"status": TokenStatus.CONFIRMED, "confirmed_at": now}
            )
            if confirmed is not None:
                return TokenOutcome(token=confirmed, events=[_event("TOKEN_CONFIRMED", confirmed)])
        raise ConcurrentUpdate(details={"tokenPrefix": str(token_id)[:8]})

    def redeem(self, token_id: str, now: datetime | None = None) -> TokenOutcome:
        now = ensure_utc(now) or utc_now()
        for _ in range(self._retries):
            token = self._load_live(token_id, now)
            if token is None:
                continue
            used = self._store.conditional_update_token(
                token.id, token.version, {"status": TokenStatus.USED, "used_at": now}
            )
            if used is not None:
                log.info("token redeemed subject=%s token=%s", mask_subject(used.subject_key), used.id[:8])
                return TokenOutcome(token=used, events=[_event("TOKEN_REDEEMED", used)])
        raise ConcurrentUpdate(details={"tokenPrefix": str(token_id)[:8]})

    def _load_live(self, token_id: str, now: datetime) -> BookingToken | None:
        """Current live token, or raise for terminal states. None means a lost race; retry."""
        token = self._store.get_token(str(token_id or ""))
        if token is None:
            raise NotFound()

        if token.status == TokenStatus.USED:
            raise AlreadyUsed("This booking link has already been used.")
        if token.status == TokenStatus.REVOKED:
            raise Revoked()
        if token.status == TokenStatus.EXPIRED:
            raise Expired("This booking link has expired. Please contact your recruiter.")
        if token.status not in TokenStatus.LIVE:
            raise VerificationError(details={"status": token.status})

        if token.is_due(now):
            expired = self._store.conditional_update_token(token.id, token.version, {"status": TokenStatus.EXPIRED})
            if expired is None:
                return None
            raise Expired(
                "This booking link has expired. Please contact your recruiter.",
                events=[_event("TOKEN_EXPIRED", expired)],
            )
        return token

    def revoke_active(self, subject: SubjectKey, actor: str) -> RevokeOutcome:
        revoked: list[BookingToken] = []
        for token in self._store.tokens_for_subject(subject.canonical):
            current: BookingToken | None = token
            for _ in range(self._retries):
                if current is None or not current.is_live:
                    break
                updated = self._store.conditional_update_token(
                    current.id, current.version, {"status": TokenStatus.REVOKED, "revoked_by": actor}
                )
                if updated is not None:
                    revoked.append(updated)
                    break
                current = self._store.get_token(token.id)
        log.info("tokens revoked subject=%s count=%s actor=%s", mask_subject(subject.canonical), len(revoked), actor)
        return RevokeOutcome(revoked=revoked, events=[_event("TOKEN_REVOKED", t, actor=actor) for t in revoked])

    def reissue(
        self,
        subject: SubjectKey,
        destination_url: str,
        actor: str,
        now: datetime | None = None,
        trace_id: str = "",
    ) -> ReissueOutcome:
        """Revoke every live token for the subject and issue a fresh one in a single store write."""
        now = ensure_utc(now) or utc_now()
        token = self._new_token(subject, destination_url, actor, now, None, trace_id)
        revoked = self._store.append_token(token, revoke_live_by=actor)
        log.info(
            "token reissued subject=%s token=%s revoked=%s actor=%s",
            mask_subject(token.subject_key),
            token.id[:8],
            len(revoked),
            actor,
        )
        events = [_event("TOKEN_REVOKED", t, actor=actor) for t in revoked]
        events.append(_event("TOKEN_REISSUED", token, actor=actor, revokedCount=len(revoked)))
        return ReissueOutcome(token=token, revoked=revoked, events=events)

    def get(self, token_id: str) -> BookingToken | None:
        return self._store.get_token(str(token_id or ""))

    def latest_for_subject(self, subject: SubjectKey) -> BookingToken | None:
        tokens = self._store.tokens_for_subject(subject.canonical)
        return tokens[-1] if tokens else None

    def history(self, subject: SubjectKey) -> list[BookingToken]:
        return self._store.tokens_for_subject(subject.canonical)

    def sweep_expired(self, now: datetime | None = None) -> int:
        now = ensure_utc(now) or utc_now()
        count = 0
        for token in self._store.live_tokens_due(now):
            if self._store.conditional_update_token(token.id, token.version, {"status": TokenStatus.EXPIRED}):
                count += 1
        return count
