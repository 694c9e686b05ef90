from __future__ import annotations

from datetime import timedelta

import pytest

from app.verification.booking_tokens import BookingTokenEngine
from app.verification.errors import AlreadyUsed, Expired, NotFound, Revoked
from app.verification.types import SubjectKey, TokenStatus

from conftest import T0

DEST = "https://calendar.example.com/book/cl12"


def test_issue_starts_issued_with_expiry(tokens, subject, settings):
    outcome = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0)
    token = outcome.token

    assert token.status == TokenStatus.ISSUED
    assert token.expires_at == T0 + timedelta(hours=settings.token_expiry_hours)
    assert len(token.id) >= 43
    assert [e.name for e in outcome.events] == ["TOKEN_ISSUED"]


def test_issue_requires_destination(tokens, subject):
    with pytest.raises(ValueError):
        tokens.issue(subject, "  ", issued_by="ADMIN", now=T0)


def test_confirm_view_is_idempotent_and_redeem_is_single_use(tokens, subject):
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token

    first = tokens.confirm_view(token.id, now=T0 + timedelta(minutes=1))
    second = tokens.confirm_view(token.id, now=T0 + timedelta(minutes=2))
    assert first.destination_url == DEST
    assert second.destination_url == DEST
    assert second.token.status == TokenStatus.CONFIRMED
    assert [e.name for e in first.events] == ["TOKEN_CONFIRMED"]
    assert second.events == []

    redeemed = tokens.redeem(token.id, now=T0 + timedelta(minutes=3))
    assert redeemed.destination_url == DEST
    assert redeemed.token.status == TokenStatus.USED
    assert redeemed.token.used_at == T0 + timedelta(minutes=3)

    with pytest.raises(AlreadyUsed):
        tokens.redeem(token.id, now=T0 + timedelta(minutes=4))
    with pytest.raises(AlreadyUsed):
        tokens.confirm_view(token.id, now=T0 + timedelta(minutes=4))


def test_repeated_views_never_burn_the_token(tokens, subject):
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    for minute in range(25):
        tokens.confirm_view(token.id, now=T0 + timedelta(minutes=minute))
    assert tokens.get(token.id).status == TokenStatus.CONFIRMED
    assert tokens.redeem(token.id, now=T0 + timedelta(hours=1)).token.status == TokenStatus.USED


def test_redeem_directly_from_issued(tokens, subject):
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    assert tokens.redeem(token.id, now=T0).token.status == TokenStatus.USED


def test_expired_token_is_rejected_and_stays_expired(tokens, subject, settings):
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    late = T0 + timedelta(hours=settings.token_expiry_hours, seconds=1)

    with pytest.raises(Expired) as exc:
        tokens.confirm_view(token.id, now=late)
    assert [e.name for e in exc.value.events] == ["TOKEN_EXPIRED"]
    assert tokens.get(token.id).status == TokenStatus.EXPIRED

    # Going back in time does not revive it.
    with pytest.raises(Expired):
        tokens.redeem(token.id, now=T0)


def test_unknown_token_is_not_found(tokens):
    with pytest.raises(NotFound):
        tokens.confirm_view("nope", now=T0)
    with pytest.raises(NotFound):
        tokens.redeem("", now=T0)


def test_reissue_revokes_live_tokens(tokens, subject):
    old = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    tokens.confirm_view(old.id, now=T0)

    outcome = tokens.reissue(subject, DEST + "?v=2", actor="hr@example.com", now=T0 + timedelta(minutes=5))
    assert outcome.revoked_count == 1
    assert outcome.token.status == TokenStatus.ISSUED
    assert outcome.token.issued_by == "hr@example.com"
    assert [e.name for e in outcome.events] == ["TOKEN_REVOKED", "TOKEN_REISSUED"]

    stale = tokens.get(old.id)
    assert stale.status == TokenStatus.REVOKED
    assert stale.revoked_by == "hr@example.com"

    with pytest.raises(Revoked):
        tokens.redeem(old.id, now=T0 + timedelta(minutes=6))
    assert tokens.redeem(outcome.token.id, now=T0 + timedelta(minutes=6)).destination_url == DEST + "?v=2"


def test_reissue_leaves_used_and_other_subjects_alone(tokens, subject):
    other = SubjectKey.of("ravi@example.com", "ACME", "Data Analyst CL7")
    used = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    tokens.redeem(used.id, now=T0)
    elsewhere = tokens.issue(other, DEST, issued_by="CANDIDATE_OTP", now=T0).token

    outcome = tokens.reissue(subject, DEST, actor="hr@example.com", now=T0 + timedelta(minutes=1))
    assert outcome.revoked_count == 0
    assert tokens.get(used.id).status == TokenStatus.USED
    assert tokens.get(elsewhere.id).status == TokenStatus.ISSUED


def test_revoke_active(tokens, subject):
    a = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    b = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0 + timedelta(seconds=1)).token

    outcome = tokens.revoke_active(subject, actor="hr@example.com")
    assert outcome.revoked_count == 2
    assert {t.id for t in outcome.revoked} == {a.id, b.id}
    assert tokens.revoke_active(subject, actor="hr@example.com").revoked_count == 0


def test_history_and_latest_are_ordered(tokens, subject):
    first = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    second = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0 + timedelta(minutes=1)).token

    assert [t.id for t in tokens.history(subject)] == [first.id, second.id]
    assert tokens.latest_for_subject(subject).id == second.id
    assert first.summary()["tokenPrefix"] == first.id[:8]


def test_sweep_only_touches_due_live_tokens(tokens, subject, settings):
    due = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    used = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    tokens.redeem(used.id, now=T0)
    fresh = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0 + timedelta(hours=47)).token

    swept = tokens.sweep_expired(now=T0 + timedelta(hours=settings.token_expiry_hours, minutes=1))
    assert swept == 1
    assert tokens.get(due.id).status == TokenStatus.EXPIRED
    assert tokens.get(used.id).status == TokenStatus.USED
    assert tokens.get(fresh.id).status == TokenStatus.ISSUED


def test_racing_redeems_use_the_token_once(racing_store, settings, subject):
    tokens = BookingTokenEngine(racing_store, settings)
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    winners = []
    racing_store.after_next_read(lambda: winners.append(tokens.redeem(token.id, now=T0 + timedelta(minutes=1))))

    with pytest.raises(AlreadyUsed):
        tokens.redeem(token.id, now=T0 + timedelta(minutes=2))

    assert len(winners) == 1
    stored = tokens.get(token.id)
    assert stored.status == TokenStatus.USED
    assert stored.used_at == T0 + timedelta(minutes=1)


def test_view_racing_a_redeem_never_reopens_the_token(racing_store, settings, subject):
    tokens = BookingTokenEngine(racing_store, settings)
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    racing_store.after_next_read(lambda: tokens.redeem(token.id, now=T0 + timedelta(minutes=1)))

    with pytest.raises(AlreadyUsed):
        tokens.confirm_view(token.id, now=T0 + timedelta(minutes=1))

    stored = tokens.get(token.id)
    assert stored.status == TokenStatus.USED
    assert stored.confirmed_at is None


def test_revoke_racing_a_redeem_leaves_it_used(racing_store, settings, subject):
    tokens = BookingTokenEngine(racing_store, settings)
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    racing_store.after_next_read(lambda: tokens.redeem(token.id, now=T0 + timedelta(minutes=1)))

    outcome = tokens.revoke_active(subject, actor="hr@example.com")

    assert outcome.revoked_count == 0
    assert tokens.get(token.id).status == TokenStatus.USED


def test_revoke_racing_a_view_retries_and_revokes(racing_store, settings, subject):
    tokens = BookingTokenEngine(racing_store, settings)
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token
    racing_store.after_next_read(lambda: tokens.confirm_view(token.id, now=T0 + timedelta(minutes=1)))

    outcome = tokens.revoke_active(subject, actor="hr@example.com")

    assert outcome.revoked_count == 1
    stored = tokens.get(token.id)
    assert stored.status == TokenStatus.REVOKED
    assert stored.confirmed_at == T0 + timedelta(minutes=1)
