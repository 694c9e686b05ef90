import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest


BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from app.verification.audit import AuditSink  # noqa: E402
from app.verification.booking_tokens import BookingTokenEngine  # noqa: E402
from app.verification.directory import StaticDirectory  # noqa: E402
from app.verification.invite_guard import InviteGuard  # noqa: E402
from app.verification.mailer import ConsoleMailSender  # noqa: E402
from app.verification.orchestrator import VerificationOrchestrator  # noqa: E402
from app.verification.otp import OtpEngine  # noqa: E402
from app.verification.resolver import StaticResolver  # noqa: E402
from app.verification.settings import VerificationSettings  # noqa: E402
from app.verification.signed_link import SignedLinkCodec  # noqa: E402
from app.verification.store import InMemoryRecordStore  # noqa: E402
from app.verification.types import SubjectKey  # noqa: E402


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

CANDIDATE_EMAIL = "asha.rao@example.com"
BRAND = "ACME"
POSITION = "Backend Engineer CL12"
BOOKING_URL = "https://calendar.google.com/calendar/u/0/appointments/schedules/AcZssZ1"
BOOKING_URL_NORMALIZED = "https://calendar.google.com/calendar/appointments/schedules/AcZssZ1"

DIRECTORY_ENTRIES = [
    {"email": CANDIDATE_EMAIL, "brand": BRAND, "position": POSITION, "name": "Asha"},
    {"email": "ravi@example.com", "brand": BRAND, "position": "Data Analyst CL7", "name": "Ravi"},
]
DESTINATIONS = [
    {"resolution_key": "ACME:CL12", "destination_url": BOOKING_URL},
    {"resolution_key": "ACME:CL7", "destination_url": "https://example.com/book/cl7", "active": False},
]


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.entries: list[dict] = []

    def record(self, trace_id, subject_masked, event_name, metadata):
        self.entries.append({"trace": trace_id, "subject": subject_masked, "event": event_name, "meta": metadata})

    def names(self) -> list[str]:
        return [e["event"] for e in self.entries]


class InterleavingStore(InMemoryRecordStore):
    """Runs queued callbacks right after a read, before the caller's conditional update.

    Each callback plays another request landing in that gap. Reads made inside a
    callback do not trigger further callbacks.
    """

    def __init__(self):
        super().__init__()
        self._pending: list = []
        self._busy = False

    def after_next_read(self, fn) -> None:
        self._pending.append(fn)

    def _interleave(self) -> None:
        if not self._pending or self._busy:
            return
        fn = self._pending.pop(0)
        self._busy = True
        try:
            fn()
        finally:
            self._busy = False

    def get_record(self, record_id):
        record = super().get_record(record_id)
        self._interleave()
        return record

    def get_token(self, token_id):
        token = super().get_token(token_id)
        self._interleave()
        return token

    def tokens_for_subject(self, subject_key):
        rows = super().tokens_for_subject(subject_key)
        self._interleave()
        return rows


def render_for_tests(template: str, ctx: dict) -> str:
    parts = " ".join(f"{k}={ctx[k]}" for k in sorted(ctx))
    return f"[{template}] {parts}"


@pytest.fixture()
def subject() -> SubjectKey:
    return SubjectKey.of(CANDIDATE_EMAIL, BRAND, POSITION)


@pytest.fixture()
def settings() -> VerificationSettings:
    return VerificationSettings(
        link_secret="test-link-secret",
        code_pepper="test-pepper",
        public_base_url="https://verify.example.com",
    )


@pytest.fixture()
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture()
def racing_store() -> InterleavingStore:
    return InterleavingStore()


@pytest.fixture()
def otp(store, settings) -> OtpEngine:
    return OtpEngine(store, settings)


@pytest.fixture()
def tokens(store, settings) -> BookingTokenEngine:
    return BookingTokenEngine(store, settings)


@pytest.fixture()
def orchestrator(store, settings):
    audit = RecordingAuditSink()
    orch = VerificationOrchestrator(
        settings=settings,
        codec=SignedLinkCodec(settings),
        otp=OtpEngine(store, settings),
        tokens=BookingTokenEngine(store, settings),
        guard=InviteGuard(store),
        directory=StaticDirectory(DIRECTORY_ENTRIES),
        resolver=StaticResolver.from_entries(DESTINATIONS),
        mailer=ConsoleMailSender(),
        audit=audit,
        render=render_for_tests,
    )
    return orch, audit


@pytest.fixture()
def app_client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    db_path = tmp_path / "test.db"

    monkeypatch.setenv("ENV", "testing")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path.as_posix()}")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("PUBLIC_BASE_URL", "http://localhost")
    monkeypatch.setenv("MAIL_BACKEND", "console")
    monkeypatch.setenv("DIRECTORY_BACKEND", "static")
    monkeypatch.setenv("DIRECTORY_STATIC_JSON", json.dumps(DIRECTORY_ENTRIES))
    monkeypatch.setenv("RESOLVER_BACKEND", "static")
    monkeypatch.setenv("BOOKING_DESTINATIONS_JSON", json.dumps(DESTINATIONS))
    monkeypatch.setenv("INTERNAL_CRON_TOKEN", "cron-secret")
    monkeypatch.setenv("RATE_LIMIT_VERIFY", "1000 per minute")

    # Prevent accidental pollution from any existing env config.
    for name in (
        "APP_ENV",
        "ALLOWED_BRANDS",
        "ENABLE_SCHEDULER",
        "BOOTSTRAP_TOKEN",
        "LINK_SECRET",
        "PEPPER",
        "AUDIT_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)

    from app import create_app

    app = create_app()
    app.testing = True
    app.extensions["rate_limiter"].reset()

    with app.test_client() as client:
        yield app, client
