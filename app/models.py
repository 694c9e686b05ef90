from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, text

from app.db import Base


class VerificationRecordRow(Base):
    __tablename__ = "verification_records"
    __table_args__ = (
        # At most one live code per subject; concurrent creates lose on this index.
        Index(
            "uq_verification_pending_subject",
            "subject_key",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        Index("ix_verification_subject_created", "subject_key", "created_at"),
    )

    id = Column(String(64), primary_key=True)
    subject_key = Column(Text, nullable=False)
    code_hash = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    bound_resource = Column(Text, nullable=True)
    lock_override = Column(String(16), nullable=True)
    trace_id = Column(String(64), nullable=False, default="")
    version = Column(Integer, nullable=False, default=1)


class BookingTokenRow(Base):
    __tablename__ = "booking_tokens"
    __table_args__ = (Index("ix_booking_subject_issued", "subject_key", "issued_at"),)

    id = Column(String(64), primary_key=True)
    subject_key = Column(Text, nullable=False)
    destination_url = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    issued_by = Column(String(255), nullable=False, default="")
    revoked_by = Column(String(255), nullable=True)
    verification_id = Column(String(64), nullable=True)
    trace_id = Column(String(64), nullable=False, default="")
    version = Column(Integer, nullable=False, default=1)


class BookingDestination(Base):
    """Resolution key (`BRAND:CL12`) to booking URL, maintained by recruiters."""

    __tablename__ = "booking_destinations"

    resolution_key = Column(String(64), primary_key=True)
    destination_url = Column(Text, nullable=False, default="")
    active = Column(Boolean, nullable=False, default=True)
    recruiter_name = Column(Text, nullable=False, default="")
    recruiter_email = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime(timezone=True), nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trace_id = Column(String(64), nullable=False, default="", index=True)
    subject_masked = Column(Text, nullable=False, default="")
    event = Column(String(64), nullable=False, index=True)
    meta_json = Column(Text, nullable=False, default="{}")
    at = Column(DateTime(timezone=True), nullable=False)
