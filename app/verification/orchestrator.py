from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from app.utils.datetime import ensure_utc, utc_now
from app.utils.logging import log_event
from app.utils.masking import mask_email, mask_subject, mask_url, new_trace_id
from app.verification.audit import AuditSink
from app.verification.booking_tokens import BookingTokenEngine
from app.verification.directory import CandidateDirectory, DirectoryMatch
from app.verification.errors import (
    AmbiguousMatch,
    DeliveryError,
    InvalidCode,
    InviteBlocked,
    Locked,
    NotConfigured,
    SignatureMismatch,
    VerificationError,
)
from app.verification.invite_guard import InviteGuard
from app.verification.mailer import MailSender
from app.verification.otp import OtpEngine
from app.verification.resolver import BookingResolver, resolution_key_for, validate_destination_url
from app.verification.settings import VerificationSettings
from app.verification.signed_link import SignedLink, SignedLinkCodec
from app.verification.types import BookingToken, Event, FlowStage, RecordStatus, SubjectKey, TokenStatus, VerificationRecord

log = logging.getLogger(__name__)

Renderer = Callable[[str, dict[str, Any]], str]

CANDIDATE_ACTOR = "CANDIDATE_OTP"


@dataclass(frozen=True)
class LinkIssued:
    link: SignedLink
    url: str
    delivered: bool | None = None


@dataclass(frozen=True)
class LinkOpened:
    link: SignedLink
    candidate: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CodeRequested:
    record_id: str
    expires_at: datetime
    delivered: bool
    sent_to: str


@dataclass(frozen=True)
class CodeAccepted:
    token: BookingToken
    access_url: str
    delivered: bool


@dataclass(frozen=True)
class Reissued:
    token: BookingToken
    revoked_count: int
    access_url: str
    delivered: bool


class VerificationOrchestrator:
    """The candidate flow end to end.

    Engines return events; this class turns them into audit entries and mail.
    GET-bound methods (`open_link`, `view_booking`) never move anything to a
    terminal state. Every rejection is audited with the trace id before it
    propagates to the HTTP layer.
    """

    def __init__(
        self,
        *,
        settings: VerificationSettings,
        codec: SignedLinkCodec,
        otp: OtpEngine,
        tokens: BookingTokenEngine,
        guard: InviteGuard,
        directory: CandidateDirectory,
        resolver: BookingResolver,
        mailer: MailSender,
        audit: AuditSink,
        render: Renderer,
    ):
        self.settings = settings
        self.codec = codec
        self.otp = otp
        self.tokens = tokens
        self.guard = guard
        self.directory = directory
        self.resolver = resolver
        self.mailer = mailer
        self.audit = audit
        self._render = render

    # side effects

    def _record(self, trace_id: str, subject_key: str, events: Iterable[Event]) -> None:
        masked = mask_subject(subject_key) if subject_key else ""
        for event in events:
            try:
                self.audit.record(trace_id, masked, event.name, dict(event.metadata))
            except Exception:
                log.exception("audit sink raised event=%s trace=%s", event.name, trace_id)

    def _reject(self, err: VerificationError, trace_id: str, subject_key: str, event_name: str) -> None:
        """Audit a rejection; the caller re-raises."""
        meta = {"code": err.code, **err.details}
        self._record(trace_id, subject_key, [*err.events, Event(event_name, meta)])

        if isinstance(err, NotConfigured):
            level = logging.ERROR
        elif isinstance(err, (SignatureMismatch, InvalidCode, Locked)):
            level = logging.WARNING
        else:
            level = logging.INFO
        log_event(log, event_name, level=level, trace_id=trace_id, subject=mask_subject(subject_key), meta=meta)

    def _send(self, trace_id: str, subject: SubjectKey, mail_subject: str, template: str, ctx: dict[str, Any]) -> bool:
        html = self._render(template, {"brand": subject.brand, "position": subject.position, **ctx})
        try:
            self.mailer.send(subject.identity, mail_subject, html)
        except DeliveryError as e:
            self._reject(e, trace_id, subject.canonical, "MAIL_NOT_DELIVERED")
            return False
        self._record(trace_id, subject.canonical, [Event("MAIL_SENT", {"template": template})])
        return True

    def _lookup_exact(self, subject: SubjectKey) -> DirectoryMatch:
        match = self.directory.lookup(subject)
        if not match.exact_match:
            raise AmbiguousMatch(details={"reason": "no_exact_match"})
        return match

    def access_url(self, token: BookingToken) -> str:
        return f"{self.settings.public_base_url}/booking/{token.id}"

    def _resolve_destination(self, subject: SubjectKey, bound_resource: str | None) -> tuple[str, str]:
        """(url, source). A destination captured when the code was issued wins."""
        if bound_resource:
            return validate_destination_url(bound_resource), "bound"

        match = self.directory.lookup(subject)
        if match.exact_match and match.resolved_destination:
            return validate_destination_url(match.resolved_destination), "directory"

        hint = str(match.attributes.get("resolution_key") or "") if match.exact_match else None
        key = resolution_key_for(subject, hint)
        if not key:
            raise NotConfigured(details={"reason": "no_resolution_key"})
        resolution = self.resolver.resolve(key)
        return validate_destination_url(resolution.destination_url), "resolver"

    def _resolve_or_reject(self, subject: SubjectKey, bound_resource: str | None, trace_id: str) -> tuple[str, str]:
        try:
            return self._resolve_destination(subject, bound_resource)
        except VerificationError as e:
            self._reject(e, trace_id, subject.canonical, "DESTINATION_UNRESOLVED")
            raise

    # candidate flow

    def issue_link(
        self,
        subject: SubjectKey,
        *,
        actor: str,
        send_email: bool = False,
        now: datetime | None = None,
        trace_id: str = "",
    ) -> LinkIssued:
        trace_id = trace_id or new_trace_id()
        try:
            match = self._lookup_exact(subject)
        except VerificationError as e:
            self._reject(e, trace_id, subject.canonical, "SIGNED_LINK_REFUSED")
            raise

        link = self.codec.sign(subject, now)
        url = link.url(self.settings.public_base_url)
        self._record(trace_id, subject.canonical, [Event("SIGNED_LINK_ISSUED", {"actor": actor, "ts": link.timestamp})])

        delivered = None
        if send_email:
            delivered = self._send(
                trace_id,
                subject,
                f"{subject.brand}: confirm your interview booking",
                "email/invite.html",
                {"name": match.attributes.get("name") or "", "action_url": url},
            )
        return LinkIssued(link=link, url=url, delivered=delivered)

    def open_link(self, args: Mapping[str, str], *, now: datetime | None = None, trace_id: str = "") -> LinkOpened:
        """GET: verifies the link and the candidate. Writes nothing but audit."""
        trace_id = trace_id or new_trace_id()
        subject_key = ""
        try:
            link = self.codec.verify_query(args, now)
            subject_key = link.subject.canonical
            match = self._lookup_exact(link.subject)
        except VerificationError as e:
            self._reject(e, trace_id, subject_key, "LINK_REJECTED")
            raise

        self._record(trace_id, subject_key, [Event("LINK_OPENED", {"ts": link.timestamp})])
        return LinkOpened(link=link, candidate={"name": match.attributes.get("name") or ""})

    def request_code(self, args: Mapping[str, str], *, now: datetime | None = None, trace_id: str = "") -> CodeRequested:
        """POST: re-verifies the link, checks the invite is still open, issues and mails a code."""
        trace_id = trace_id or new_trace_id()
        subject_key = ""
        try:
            link = self.codec.verify_query(args, now)
            subject = link.subject
            subject_key = subject.canonical
            match = self._lookup_exact(subject)
            decision = self.guard.check(subject)
            if not decision.allowed:
                raise InviteBlocked(details={"reason": decision.reason})
            issued = self.otp.create_code(subject, match.resolved_destination, now=now, trace_id=trace_id)
        except VerificationError as e:
            self._reject(e, trace_id, subject_key, "CODE_REQUEST_REJECTED")
            raise

        events = list(issued.events)
        if decision.reason == "UNLOCK_OVERRIDE":
            events.insert(0, Event("INVITE_OVERRIDE_UNLOCKED", {}))
        self._record(trace_id, subject_key, events)

        delivered = self._send(
            trace_id,
            subject,
            f"{subject.brand}: your verification code",
            "email/otp_code.html",
            {
                "name": match.attributes.get("name") or "",
                "code": issued.code,
                "expiry_minutes": self.settings.otp_expiry_minutes,
            },
        )
        return CodeRequested(
            record_id=issued.id,
            expires_at=issued.expires_at,
            delivered=delivered,
            sent_to=mask_email(subject.identity),
        )

    def submit_code(
        self, record_id: str, code: str, *, now: datetime | None = None, trace_id: str = ""
    ) -> CodeAccepted:
        """POST: validates the code and issues the booking token."""
        trace_id = trace_id or new_trace_id()
        existing = self.otp.get(record_id)
        subject_key = existing.subject_key if existing else ""

        # Resolve while the code is still pending, so a missing destination does not consume it.
        resolved = None
        if existing is not None and existing.status == RecordStatus.PENDING:
            if not existing.is_due(ensure_utc(now) or utc_now()):
                resolved = self._resolve_or_reject(existing.subject, existing.bound_resource, trace_id)

        try:
            verified = self.otp.validate_code(record_id, code, now)
        except VerificationError as e:
            self._reject(e, trace_id, subject_key, "CODE_REJECTED")
            raise
        self._record(trace_id, subject_key, verified.events)

        subject = verified.record.subject
        destination, source = resolved or self._resolve_or_reject(subject, verified.bound_resource, trace_id)

        outcome = self.tokens.issue(
            subject,
            destination,
            issued_by=CANDIDATE_ACTOR,
            now=now,
            verification_id=verified.record.id,
            trace_id=trace_id,
        )
        self._record(
            trace_id,
            subject_key,
            [Event(e.name, {**e.metadata, "source": source, "dest": mask_url(destination)}) for e in outcome.events],
        )

        access_url = self.access_url(outcome.token)
        delivered = self._send(
            trace_id,
            subject,
            f"{subject.brand}: your interview booking link",
            "email/booking_link.html",
            {"access_url": access_url, "expires_at": outcome.token.expires_at},
        )
        return CodeAccepted(token=outcome.token, access_url=access_url, delivered=delivered)

    def view_booking(self, token_id: str, *, now: datetime | None = None, trace_id: str = "") -> BookingToken:
        """GET: safe for link scanners; never burns the token."""
        return self._token_call(self.tokens.confirm_view, token_id, now, trace_id, "BOOKING_VIEW_REJECTED")

    def redeem_booking(self, token_id: str, *, now: datetime | None = None, trace_id: str = "") -> BookingToken:
        """POST: burns the token and returns it with its destination."""
        return self._token_call(self.tokens.redeem, token_id, now, trace_id, "BOOKING_REDEEM_REJECTED")

    def _token_call(self, fn, token_id: str, now: datetime | None, trace_id: str, reject_event: str) -> BookingToken:
        trace_id = trace_id or new_trace_id()
        try:
            outcome = fn(token_id, now)
        except VerificationError as e:
            existing = self.tokens.get(token_id)
            self._reject(e, trace_id, existing.subject_key if existing else "", reject_event)
            raise
        self._record(trace_id, outcome.token.subject_key, outcome.events)
        return outcome.token

    # admin

    def reissue(self, subject: SubjectKey, *, actor: str, now: datetime | None = None, trace_id: str = "") -> Reissued:
        """Revoke live tokens, issue a new one and mail it. Skips the invite guard."""
        trace_id = trace_id or new_trace_id()
        try:
            self._lookup_exact(subject)
            destination, source = self._resolve_destination(subject, None)
        except VerificationError as e:
            self._reject(e, trace_id, subject.canonical, "REISSUE_REJECTED")
            raise

        outcome = self.tokens.reissue(subject, destination, actor, now=now, trace_id=trace_id)
        self._record(trace_id, subject.canonical, outcome.events)

        access_url = self.access_url(outcome.token)
        delivered = self._send(
            trace_id,
            subject,
            f"{subject.brand}: your new interview booking link",
            "email/booking_link.html",
            {"access_url": access_url, "expires_at": outcome.token.expires_at, "reissued": True},
        )
        log.info(
            "reissue subject=%s revoked=%s source=%s actor=%s",
            mask_subject(subject.canonical),
            outcome.revoked_count,
            source,
            actor,
        )
        return Reissued(
            token=outcome.token, revoked_count=outcome.revoked_count, access_url=access_url, delivered=delivered
        )

    def revoke(self, subject: SubjectKey, *, actor: str, trace_id: str = "") -> int:
        trace_id = trace_id or new_trace_id()
        outcome = self.tokens.revoke_active(subject, actor)
        self._record(trace_id, subject.canonical, outcome.events)
        return outcome.revoked_count

    def unlock(self, record_id: str, *, actor: str, trace_id: str = "") -> VerificationRecord:
        trace_id = trace_id or new_trace_id()
        record = self.otp.unlock(record_id, actor)
        self._record(trace_id, record.subject_key, [Event("INVITE_UNLOCKED", {"recordId": record.id[:8], "actor": actor})])
        return record

    def flow_stage(self, subject: SubjectKey) -> str:
        record = self.otp.latest_for_subject(subject)
        token = self.tokens.latest_for_subject(subject)

        if token is not None and (record is None or token.issued_at >= record.created_at):
            if token.status == TokenStatus.USED:
                return FlowStage.TOKEN_REDEEMED
            if token.status == TokenStatus.CONFIRMED:
                return FlowStage.TOKEN_CONFIRMED
            if token.status == TokenStatus.ISSUED:
                return FlowStage.TOKEN_ISSUED
        if record is not None:
            if record.status == RecordStatus.VERIFIED:
                return FlowStage.OTP_VERIFIED
            if record.status == RecordStatus.PENDING:
                return FlowStage.OTP_SENT
        return FlowStage.LINK_ISSUED

    def history(self, subject: SubjectKey) -> dict[str, Any]:
        return {
            "subject": mask_subject(subject.canonical),
            "stage": self.flow_stage(subject),
            "invite": self.guard.check(subject).reason,
            "verifications": [
                {
                    "id": r.id,
                    "status": r.status,
                    "attempts": r.attempts,
                    "createdAt": r.created_at,
                    "expiresAt": r.expires_at,
                    "lockOverride": r.lock_override,
                }
                for r in self.otp.history(subject)
            ],
            "tokens": [t.summary() for t in self.tokens.history(subject)],
        }

    def sweep(self, *, now: datetime | None = None, trace_id: str = "") -> dict[str, int]:
        """Advisory expiry sweep; correctness never depends on it."""
        trace_id = trace_id or new_trace_id()
        now = ensure_utc(now) or utc_now()
        result = {"records": self.otp.sweep_expired(now), "tokens": self.tokens.sweep_expired(now)}
        self._record(trace_id, "", [Event("EXPIRY_SWEEP", dict(result))])
        return result
