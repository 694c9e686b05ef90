from __future__ import annotations

import json
import logging

import pytest
from sqlalchemy import select

from app import models
from app.db import SessionLocal
from app.verification.audit import LoggingAuditSink, SqlAuditSink
from app.verification.factory import get_orchestrator

from conftest import BRAND, CANDIDATE_EMAIL, POSITION


def test_logging_sink_writes_one_json_line(caplog):
    sink = LoggingAuditSink("tests.audit")
    with caplog.at_level(logging.INFO, logger="tests.audit"):
        sink.record("tr-1", "ACME|as***@example.com|QA", "CODE_ISSUED", {"recordId": "abcd1234"})

    assert len(caplog.records) == 1
    line = json.loads(caplog.records[0].getMessage())
    assert line["event"] == "CODE_ISSUED"
    assert line["trace_id"] == "tr-1"
    assert line["subject"] == "ACME|as***@example.com|QA"
    assert line["meta"] == {"recordId": "abcd1234"}


def test_default_audit_backend_writes_rows(app_client):
    app, client = app_client
    assert isinstance(get_orchestrator(app).audit, SqlAuditSink)

    client.get("/verify", query_string={"b": BRAND, "e": CANDIDATE_EMAIL, "p": POSITION, "ts": "1", "sig": "x"})
    with SessionLocal() as db:
        events = db.execute(select(models.AuditEvent.event)).scalars().all()
    assert "LINK_REJECTED" in events


def test_audit_backend_switch(app_client, monkeypatch):
    from app import create_app

    monkeypatch.setenv("AUDIT_BACKEND", "log")
    assert isinstance(get_orchestrator(create_app()).audit, LoggingAuditSink)

    monkeypatch.setenv("AUDIT_BACKEND", "kafka")
    with pytest.raises(RuntimeError, match="AUDIT_BACKEND"):
        create_app()
