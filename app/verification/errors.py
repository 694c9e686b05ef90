from __future__ import annotations

from typing import Any, Sequence

from app.verification.types import Event


class VerificationError(Exception):
    """Terminal rejection of one request.

    `message` is safe to show a candidate; `details` only goes to server logs.
    `events` are the state transitions that happened before the rejection
    (e.g. a record moved to LOCKED) so the caller can audit them.
    """

    code = "VERIFICATION_FAILED"
    status = 400
    title = "Something went wrong"
    default_message = "This link can't be used. Please contact your recruiter."

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        events: Sequence[Event] = (),
    ):
        self.message = message or self.default_message
        self.details = details or {}
        self.events = list(events)
        super().__init__(self.message)


class NotFound(VerificationError):
    code = "NOT_FOUND"
    status = 404
    title = "Link not found"
    default_message = "We couldn't find this link. Please use the latest email you received."


class Expired(VerificationError):
    code = "EXPIRED"
    status = 410
    title = "Link expired"
    default_message = "This link has expired. Please request a new one."


class Locked(VerificationError):
    code = "LOCKED"
    status = 423
    title = "Too many attempts"
    default_message = "Too many incorrect attempts. Please contact your recruiter to unlock access."


class AlreadyUsed(VerificationError):
    code = "ALREADY_USED"
    status = 409
    title = "Already used"
    default_message = "This link has already been used."


class Revoked(VerificationError):
    code = "REVOKED"
    status = 410
    title = "Link replaced"
    default_message = "This link is no longer valid. Please use the latest email you received."


class Superseded(VerificationError):
    code = "SUPERSEDED"
    status = 409
    title = "Code replaced"
    default_message = "This code was replaced. Check your email for the latest code."


class InvalidCode(VerificationError):
    code = "INVALID_CODE"
    status = 400
    title = "Incorrect code"

    def __init__(self, remaining: int, **kwargs: Any):
        self.remaining = remaining
        noun = "attempt" if remaining == 1 else "attempts"
        super().__init__(f"Incorrect code. {remaining} {noun} remaining.", **kwargs)


class SignatureMismatch(VerificationError):
    code = "SIGNATURE_MISMATCH"
    status = 403
    title = "Invalid link"
    default_message = "This link is not valid. Please use the link from your email."


class AmbiguousMatch(VerificationError):
    code = "NO_MATCH"
    status = 403
    title = "We couldn't verify you"
    default_message = "We couldn't verify this link. Please contact your recruiter."


class DeliveryError(VerificationError):
    code = "DELIVERY_FAILED"
    status = 502
    title = "Email not sent"
    default_message = "We couldn't send the email right now. Please try again."


class NotConfigured(VerificationError):
    code = "NOT_CONFIGURED"
    status = 503
    title = "Booking unavailable"
    default_message = "Booking isn't available yet. Your recruiter has been notified."


class Inactive(NotConfigured):
    code = "INACTIVE"


class InviteBlocked(VerificationError):
    code = "INVITE_BLOCKED"
    status = 403
    title = "Invite closed"
    default_message = "This invite is no longer active. Please contact your recruiter."


class ConcurrentUpdate(VerificationError):
    code = "CONFLICT"
    status = 409
    title = "Please try again"
    default_message = "This request collided with another one. Please try again."


class DirectoryUnavailable(NotConfigured):
    code = "DIRECTORY_UNAVAILABLE"
    title = "Please try again later"
    default_message = "We couldn't check your invite right now. Please try again in a few minutes."
