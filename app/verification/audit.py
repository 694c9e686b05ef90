from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import AuditEvent
from app.utils.datetime import utc_now
from app.utils.logging import log_event

log = logging.getLogger(__name__)


class AuditSink(ABC):
    """Append-only event recorder. Implementations must never raise into the caller."""

    @abstractmethod
    def record(self, trace_id: str, subject_masked: str, event_name: str, metadata: dict[str, Any]) -> None: ...


class LoggingAuditSink(AuditSink):
    def __init__(self, logger_name: str = "app.audit"):
        self._logger = logging.getLogger(logger_name)

    def record(self, trace_id: str, subject_masked: str, event_name: str, metadata: dict[str, Any]) -> None:
        log_event(self._logger, event_name, trace_id=trace_id, subject=subject_masked, meta=metadata)


class SqlAuditSink(AuditSink):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def record(self, trace_id: str, subject_masked: str, event_name: str, metadata: dict[str, Any]) -> None:
        try:
            with self._session_factory() as db:
                db.add(
                    AuditEvent(
                        trace_id=str(trace_id or ""),
                        subject_masked=str(subject_masked or ""),
                        event=str(event_name or "UNKNOWN"),
                        meta_json=json.dumps(metadata or {}, default=str),
                        at=utc_now(),
                    )
                )
                db.commit()
        except SQLAlchemyError:
            # Audit is best-effort; the verification flow carries on.
            log.exception("audit write failed event=%s trace=%s", event_name, trace_id)
