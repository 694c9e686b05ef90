from __future__ import annotations

from urllib.parse import urlsplit

import pytest

from app.utils.auth import create_access_token
from app.verification.errors import VerificationError
from app.verification.factory import get_orchestrator
from app.verification.types import RecordStatus, SubjectKey, TokenStatus

from conftest import BRAND, CANDIDATE_EMAIL, POSITION

SUBJECT_BODY = {"email": CANDIDATE_EMAIL, "brand": BRAND, "position": POSITION}


def _auth(app, role: str = "HR") -> dict[str, str]:
    token = create_access_token(app, subject="hr@example.com", email="hr@example.com", role=role)
    return {"Authorization": f"Bearer {token}"}


def _subject() -> SubjectKey:
    return SubjectKey.of(CANDIDATE_EMAIL, BRAND, POSITION)


def test_admin_requires_bearer_token(app_client):
    _app, client = app_client
    res = client.post("/api/v1/admin/signed-links", json=SUBJECT_BODY)
    assert res.status_code == 401
    body = res.get_json()
    assert body["success"] is False
    assert body["error"]["code"] == "AUTH_INVALID"


def test_admin_rejects_unknown_role(app_client):
    app, client = app_client
    res = client.post("/api/v1/admin/signed-links", json=SUBJECT_BODY, headers=_auth(app, role="VIEWER"))
    assert res.status_code == 403


def test_issue_signed_link_and_open_it(app_client):
    app, client = app_client
    res = client.post(
        "/api/v1/admin/signed-links", json={**SUBJECT_BODY, "sendEmail": True}, headers=_auth(app)
    )
    assert res.status_code == 201
    data = res.get_json()["data"]
    assert data["delivered"] is True

    parts = urlsplit(data["url"])
    assert parts.path == "/verify"
    res = client.get(f"/verify?{parts.query}")
    assert res.status_code == 200

    invite = get_orchestrator(app).mailer.last_to(CANDIDATE_EMAIL)
    assert "/verify?" in invite.html_body


def test_issue_signed_link_for_unknown_candidate(app_client):
    app, client = app_client
    res = client.post(
        "/api/v1/admin/signed-links",
        json={**SUBJECT_BODY, "email": "nobody@example.com"},
        headers=_auth(app),
    )
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "NO_MATCH"


def test_issue_signed_link_validates_body(app_client):
    app, client = app_client
    res = client.post("/api/v1/admin/signed-links", json={"email": "not-an-email"}, headers=_auth(app))
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_reissue_revoke_and_history(app_client):
    app, client = app_client
    orch = get_orchestrator(app)
    first = orch.tokens.issue(_subject(), "https://example.com/book", issued_by="CANDIDATE_OTP").token

    res = client.post("/api/v1/admin/tokens/reissue", json=SUBJECT_BODY, headers=_auth(app))
    assert res.status_code == 201
    data = res.get_json()["data"]
    assert data["revokedCount"] == 1
    assert data["accessUrl"].startswith("http://localhost/booking/")
    assert orch.tokens.get(first.id).status == TokenStatus.REVOKED

    res = client.post("/api/v1/admin/tokens/revoke", json=SUBJECT_BODY, headers=_auth(app))
    assert res.status_code == 200
    assert res.get_json()["data"]["revokedCount"] == 1

    res = client.get("/api/v1/admin/subjects/history", query_string=SUBJECT_BODY, headers=_auth(app))
    assert res.status_code == 200
    history = res.get_json()["data"]
    assert [t["status"] for t in history["tokens"]] == [TokenStatus.REVOKED, TokenStatus.REVOKED]
    assert history["tokens"][1]["revokedBy"] == "hr@example.com"
    assert CANDIDATE_EMAIL not in res.get_data(as_text=True)


def test_unlock_locked_verification(app_client):
    app, client = app_client
    orch = get_orchestrator(app)
    issued = orch.otp.create_code(_subject())
    for _ in range(3):
        with pytest.raises(VerificationError):
            orch.otp.validate_code(issued.id, "000000")

    res = client.post(f"/api/v1/admin/verifications/{issued.id}/unlock", headers=_auth(app))
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["status"] == RecordStatus.LOCKED
    assert data["lockOverride"] == "UNLOCK"


def test_allowed_brands(app_client, monkeypatch):
    from app import create_app

    monkeypatch.setenv("ALLOWED_BRANDS", "globex")
    app = create_app()
    client = app.test_client()

    res = client.post("/api/v1/admin/signed-links", json=SUBJECT_BODY, headers=_auth(app))
    assert res.status_code == 400
    assert res.get_json()["error"]["message"] == "Unknown brand"


def test_expire_sweep_with_internal_token(app_client):
    _app, client = app_client
    res = client.post("/api/v1/jobs/expire-sweep", headers={"X-Internal-Token": "cron-secret"})
    assert res.status_code == 200
    assert res.get_json()["data"] == {"records": 0, "tokens": 0}

    res = client.post("/api/v1/jobs/expire-sweep", headers={"X-Internal-Token": "wrong"})
    assert res.status_code == 401


def test_service_token_bootstrap(app_client, monkeypatch):
    _app, client = app_client

    res = client.post("/api/v1/auth/service-token", json={"email": "hr@example.com"})
    assert res.status_code == 403

    monkeypatch.setenv("BOOTSTRAP_TOKEN", "boot")
    res = client.post(
        "/api/v1/auth/service-token",
        json={"email": "hr@example.com", "role": "hr"},
        headers={"X-Bootstrap-Token": "boot"},
    )
    assert res.status_code == 201
    token = res.get_json()["data"]["token"]

    res = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.get_json()["data"] == {"id": "hr@example.com", "email": "hr@example.com", "role": "HR"}


def test_separator_in_subject_fields_is_rejected(app_client):
    app, client = app_client
    for body in ({**SUBJECT_BODY, "email": "a|b@example.com"}, {**SUBJECT_BODY, "brand": "AC|ME"}):
        res = client.post("/api/v1/admin/signed-links", json=body, headers=_auth(app))
        assert res.status_code == 400
        assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_internal_token_must_match_exactly(app_client, monkeypatch):
    _app, client = app_client
    for wrong in ("cron-secre", "cron-secret-x", "CRON-SECRET", ""):
        res = client.post("/api/v1/jobs/expire-sweep", headers={"X-Internal-Token": wrong})
        assert res.status_code == 401

    from app import create_app

    monkeypatch.delenv("INTERNAL_CRON_TOKEN")
    unset = create_app().test_client()
    res = unset.post("/api/v1/jobs/expire-sweep", headers={"X-Internal-Token": ""})
    assert res.status_code == 401
