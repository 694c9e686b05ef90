from __future__ import annotations

from dataclasses import dataclass

from app.verification.store import RecordStore
from app.verification.types import UNLOCK_OVERRIDE, RecordStatus, SubjectKey, TokenStatus


@dataclass(frozen=True)
class InviteDecision:
    allowed: bool
    reason: str


class InviteGuard:
    """Decides whether a candidate may self-serve a new code for this subject.

    Only candidate-initiated requests go through here; admin reissue does not.
    """

    def __init__(self, store: RecordStore):
        self._store = store

    def check(self, subject: SubjectKey) -> InviteDecision:
        tokens = self._store.tokens_for_subject(subject.canonical)
        if tokens and tokens[-1].status == TokenStatus.USED:
            return InviteDecision(False, "LATEST_USED")

        records = self._store.records_for_subject(subject.canonical)
        if records and records[-1].status == RecordStatus.LOCKED:
            if records[-1].lock_override == UNLOCK_OVERRIDE:
                return InviteDecision(True, "UNLOCK_OVERRIDE")
            return InviteDecision(False, "LATEST_LOCKED")

        return InviteDecision(True, "OK")
