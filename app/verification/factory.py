from __future__ import annotations

import json
import logging

from flask import Flask

from app.db import SessionLocal
from app.verification.audit import AuditSink, LoggingAuditSink, SqlAuditSink
from app.verification.booking_tokens import BookingTokenEngine
from app.verification.directory import CandidateDirectory, SmartsheetDirectory, StaticDirectory
from app.verification.invite_guard import InviteGuard
from app.verification.mailer import ConsoleMailSender, MailSender, SmtpMailSender, WebhookMailSender
from app.verification.orchestrator import VerificationOrchestrator
from app.verification.otp import OtpEngine
from app.verification.resolver import BookingResolver, SqlResolver, StaticResolver
from app.verification.scheduler import maybe_start_sweeper
from app.verification.settings import VerificationSettings
from app.verification.signed_link import SignedLinkCodec
from app.verification.sql_store import SqlRecordStore
from app.verification.store import RecordStore

log = logging.getLogger(__name__)


def build_directory(cfg) -> CandidateDirectory:
    if cfg.DIRECTORY_BACKEND == "smartsheet":
        return SmartsheetDirectory(
            api_token=cfg.SMARTSHEET_API_TOKEN,
            sheets_by_brand=cfg.SMARTSHEET_SHEETS,
            email_column=cfg.SMARTSHEET_EMAIL_COLUMN,
            position_column=cfg.SMARTSHEET_POSITION_COLUMN,
            name_column=cfg.SMARTSHEET_NAME_COLUMN,
            link_column=cfg.SMARTSHEET_LINK_COLUMN,
            resolution_column=cfg.SMARTSHEET_CL_COLUMN,
            cache_seconds=cfg.DIRECTORY_CACHE_SECONDS,
        )
    if cfg.DIRECTORY_BACKEND == "static":
        return StaticDirectory.from_json(cfg.DIRECTORY_STATIC_JSON)
    raise RuntimeError(f"Unknown DIRECTORY_BACKEND: {cfg.DIRECTORY_BACKEND}")


def build_resolver(cfg) -> BookingResolver:
    if cfg.RESOLVER_BACKEND == "sql":
        return SqlResolver(SessionLocal)
    if cfg.RESOLVER_BACKEND == "static":
        raw = cfg.BOOKING_DESTINATIONS_JSON
        return StaticResolver.from_entries(json.loads(raw) if raw else [])
    raise RuntimeError(f"Unknown RESOLVER_BACKEND: {cfg.RESOLVER_BACKEND}")


def build_mailer(cfg) -> MailSender:
    if cfg.MAIL_BACKEND == "console":
        return ConsoleMailSender()
    if cfg.MAIL_BACKEND == "smtp":
        return SmtpMailSender(
            host=cfg.SMTP_HOST,
            port=cfg.SMTP_PORT,
            username=cfg.SMTP_USER,
            password=cfg.SMTP_PASS,
            sender=cfg.MAIL_FROM,
            use_tls=cfg.SMTP_USE_TLS,
            use_ssl=cfg.SMTP_USE_SSL,
            timeout=cfg.MAIL_TIMEOUT_SECONDS,
        )
    if cfg.MAIL_BACKEND == "webhook":
        return WebhookMailSender(
            url=cfg.MAIL_WEBHOOK_URL,
            token=cfg.MAIL_WEBHOOK_TOKEN,
            sender=cfg.MAIL_FROM,
            timeout=cfg.MAIL_TIMEOUT_SECONDS,
        )
    raise RuntimeError(f"Unknown MAIL_BACKEND: {cfg.MAIL_BACKEND}")


def build_audit_sink(cfg) -> AuditSink:
    if cfg.AUDIT_BACKEND == "sql":
        return SqlAuditSink(SessionLocal)
    if cfg.AUDIT_BACKEND == "log":
        return LoggingAuditSink(cfg.AUDIT_LOGGER)
    raise RuntimeError(f"Unknown AUDIT_BACKEND: {cfg.AUDIT_BACKEND}")


def build_orchestrator(
    app: Flask,
    *,
    store: RecordStore | None = None,
    directory: CandidateDirectory | None = None,
    resolver: BookingResolver | None = None,
    mailer: MailSender | None = None,
    audit: AuditSink | None = None,
) -> VerificationOrchestrator:
    cfg = app.config["CFG"]
    settings = VerificationSettings.from_config(cfg)
    store = store or SqlRecordStore(SessionLocal)

    def render(template: str, ctx: dict) -> str:
        return app.jinja_env.get_template(template).render(**ctx)

    return VerificationOrchestrator(
        settings=settings,
        codec=SignedLinkCodec(settings),
        otp=OtpEngine(store, settings),
        tokens=BookingTokenEngine(store, settings),
        guard=InviteGuard(store),
        directory=directory or build_directory(cfg),
        resolver=resolver or build_resolver(cfg),
        mailer=mailer or build_mailer(cfg),
        audit=audit or build_audit_sink(cfg),
        render=render,
    )


def init_verification(app: Flask) -> VerificationOrchestrator:
    orchestrator = build_orchestrator(app)
    app.extensions["verification"] = orchestrator
    maybe_start_sweeper(app)
    log.info(
        "verification ready directory=%s resolver=%s mail=%s audit=%s",
        app.config["CFG"].DIRECTORY_BACKEND,
        app.config["CFG"].RESOLVER_BACKEND,
        app.config["CFG"].MAIL_BACKEND,
        app.config["CFG"].AUDIT_BACKEND,
    )
    return orchestrator


def get_orchestrator(app: Flask) -> VerificationOrchestrator:
    orchestrator = app.extensions.get("verification")
    if orchestrator is None:
        raise RuntimeError("verification is not initialized")
    return orchestrator
