from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app import models
from app.db import Base
from app.verification.booking_tokens import BookingTokenEngine
from app.verification.errors import AlreadyUsed, InvalidCode, Locked
from app.verification.otp import OtpEngine
from app.verification.sql_store import SqlRecordStore
from app.verification.types import RecordStatus, TokenStatus

from conftest import T0

DEST = "https://calendar.example.com/book/cl12"


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{(tmp_path / 'store.db').as_posix()}", future=True)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, future=True, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def sql_store(session_factory):
    return SqlRecordStore(session_factory)


def test_records_round_trip_with_utc_datetimes(sql_store, settings, subject):
    otp = OtpEngine(sql_store, settings)
    issued = otp.create_code(subject, bound_resource=DEST, now=T0)

    record = sql_store.get_record(issued.id)
    assert record.status == RecordStatus.PENDING
    assert record.created_at == T0
    assert record.created_at.tzinfo is not None
    assert record.bound_resource == DEST
    assert record.version == 1


def test_second_code_supersedes_first(sql_store, settings, subject):
    otp = OtpEngine(sql_store, settings)
    first = otp.create_code(subject, now=T0)
    second = otp.create_code(subject, now=T0 + timedelta(seconds=5))

    assert [e.name for e in second.events] == ["CODE_SUPERSEDED", "CODE_ISSUED"]
    history = sql_store.records_for_subject(subject.canonical)
    assert [r.id for r in history] == [first.id, second.id]
    assert [r.status for r in history] == [RecordStatus.SUPERSEDED, RecordStatus.PENDING]


def test_pending_index_rejects_two_live_codes(session_factory, subject):
    with session_factory() as db:
        for record_id in ("r1", "r2"):
            db.add(
                models.VerificationRecordRow(
                    id=record_id,
                    subject_key=subject.canonical,
                    code_hash="x" * 64,
                    status=RecordStatus.PENDING,
                    attempts=0,
                    created_at=T0,
                    expires_at=T0 + timedelta(minutes=10),
                    trace_id="",
                    version=1,
                )
            )
        with pytest.raises(IntegrityError):
            db.commit()


def test_conditional_update_rejects_stale_version(sql_store, settings, subject):
    otp = OtpEngine(sql_store, settings)
    issued = otp.create_code(subject, now=T0)

    updated = sql_store.conditional_update_record(issued.id, 1, {"attempts": 1})
    assert updated.version == 2
    assert updated.attempts == 1

    assert sql_store.conditional_update_record(issued.id, 1, {"attempts": 2}) is None
    assert sql_store.get_record(issued.id).attempts == 1


def test_attempt_ceiling_over_sql(sql_store, settings, subject):
    otp = OtpEngine(sql_store, settings)
    issued = otp.create_code(subject, now=T0)

    for _ in range(2):
        with pytest.raises(InvalidCode):
            otp.validate_code(issued.id, "000000", now=T0)
    with pytest.raises(Locked):
        otp.validate_code(issued.id, "000000", now=T0)

    record = sql_store.get_record(issued.id)
    assert record.status == RecordStatus.LOCKED
    assert record.attempts == 3


def test_token_lifecycle_over_sql(sql_store, settings, subject):
    tokens = BookingTokenEngine(sql_store, settings)
    token = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token

    tokens.confirm_view(token.id, now=T0 + timedelta(minutes=1))
    tokens.confirm_view(token.id, now=T0 + timedelta(minutes=2))
    assert sql_store.get_token(token.id).status == TokenStatus.CONFIRMED

    used = tokens.redeem(token.id, now=T0 + timedelta(minutes=3))
    assert used.token.status == TokenStatus.USED
    assert used.token.used_at == T0 + timedelta(minutes=3)
    with pytest.raises(AlreadyUsed):
        tokens.redeem(token.id, now=T0 + timedelta(minutes=4))


def test_reissue_revokes_in_same_write(sql_store, settings, subject):
    tokens = BookingTokenEngine(sql_store, settings)
    old = tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0).token

    outcome = tokens.reissue(subject, DEST, actor="hr@example.com", now=T0 + timedelta(minutes=1))
    assert outcome.revoked_count == 1

    history = sql_store.tokens_for_subject(subject.canonical)
    assert [t.id for t in history] == [old.id, outcome.token.id]
    assert history[0].status == TokenStatus.REVOKED
    assert history[0].revoked_by == "hr@example.com"
    assert history[1].status == TokenStatus.ISSUED


def test_due_queries(sql_store, settings, subject):
    otp = OtpEngine(sql_store, settings)
    tokens = BookingTokenEngine(sql_store, settings)
    otp.create_code(subject, now=T0)
    tokens.issue(subject, DEST, issued_by="CANDIDATE_OTP", now=T0)

    assert sql_store.pending_records_due(T0 + timedelta(minutes=5)) == []
    assert len(sql_store.pending_records_due(T0 + timedelta(minutes=11))) == 1
    assert sql_store.live_tokens_due(T0 + timedelta(hours=1)) == []
    assert len(sql_store.live_tokens_due(T0 + timedelta(hours=49))) == 1
