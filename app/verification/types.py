from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class RecordStatus:
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    EXPIRED = "EXPIRED"
    LOCKED = "LOCKED"
    SUPERSEDED = "SUPERSEDED"

    TERMINAL = frozenset({VERIFIED, EXPIRED, LOCKED, SUPERSEDED})


class TokenStatus:
    ISSUED = "ISSUED"
    CONFIRMED = "CONFIRMED"
    USED = "USED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"

    LIVE = frozenset({ISSUED, CONFIRMED})
    TERMINAL = frozenset({USED, REVOKED, EXPIRED})


class FlowStage:
    LINK_ISSUED = "LINK_ISSUED"
    LINK_OPENED = "LINK_OPENED"
    OTP_SENT = "OTP_SENT"
    OTP_VERIFIED = "OTP_VERIFIED"
    TOKEN_ISSUED = "TOKEN_ISSUED"
    TOKEN_CONFIRMED = "TOKEN_CONFIRMED"
    TOKEN_REDEEMED = "TOKEN_REDEEMED"


UNLOCK_OVERRIDE = "UNLOCK"

# Field separator of the stored subject key. Only the last field, position, may contain it.
KEY_SEPARATOR = "|"


@dataclass(frozen=True)
class SubjectKey:
    """The (identity, brand, position) triple a record or token is bound to.

    Construct through `SubjectKey.of(...)` at the edges so free-form input is
    normalized once. Identity and brand never contain the key separator, so
    `parse(key.canonical) == key` always holds.
    """

    identity: str
    brand: str
    position: str

    def __post_init__(self) -> None:
        if KEY_SEPARATOR in self.identity or KEY_SEPARATOR in self.brand:
            raise ValueError("identity and brand must not contain '|'")

    @classmethod
    def of(cls, identity: str, brand: str, position: str) -> "SubjectKey":
        return cls(
            identity=str(identity or "").strip().lower(),
            brand=str(brand or "").strip().upper(),
            position=" ".join(str(position or "").split()),
        )

    @classmethod
    def parse(cls, canonical: str) -> "SubjectKey":
        parts = str(canonical or "").split(KEY_SEPARATOR, 2)
        if len(parts) != 3:
            raise ValueError("subject key must look like BRAND|identity|position")
        brand, identity, position = parts
        return cls(identity=identity, brand=brand, position=position)

    @property
    def canonical(self) -> str:
        return KEY_SEPARATOR.join((self.brand, self.identity, self.position))

    def __str__(self) -> str:
        return self.canonical


@dataclass(frozen=True)
class Event:
    name: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationRecord:
    id: str
    subject_key: str
    code_hash: str
    status: str
    attempts: int
    created_at: datetime
    expires_at: datetime
    verified_at: datetime | None = None
    bound_resource: str | None = None
    lock_override: str | None = None
    trace_id: str = ""
    version: int = 1

    @property
    def subject(self) -> SubjectKey:
        return SubjectKey.parse(self.subject_key)

    def is_due(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class BookingToken:
    id: str
    subject_key: str
    destination_url: str
    status: str
    issued_at: datetime
    expires_at: datetime
    confirmed_at: datetime | None = None
    used_at: datetime | None = None
    issued_by: str = ""
    revoked_by: str | None = None
    verification_id: str | None = None
    trace_id: str = ""
    version: int = 1

    @property
    def subject(self) -> SubjectKey:
        return SubjectKey.parse(self.subject_key)

    @property
    def is_live(self) -> bool:
        return self.status in TokenStatus.LIVE

    def is_due(self, now: datetime) -> bool:
        return now > self.expires_at

    def summary(self) -> dict[str, Any]:
        """Admin-facing view; never exposes the full token id."""
        return {
            "tokenPrefix": self.id[:8],
            "status": self.status,
            "issuedAt": self.issued_at,
            "expiresAt": self.expires_at,
            "confirmedAt": self.confirmed_at,
            "usedAt": self.used_at,
            "issuedBy": self.issued_by,
            "revokedBy": self.revoked_by,
        }
