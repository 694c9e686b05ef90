from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping
from urllib.parse import urlencode

from app.utils.datetime import ensure_utc, utc_now
from app.verification.errors import Expired, SignatureMismatch
from app.verification.settings import VerificationSettings
from app.verification.types import KEY_SEPARATOR, SubjectKey

# Query parameter names carried by emailed links.
PARAM_BRAND = "b"
PARAM_IDENTITY = "e"
PARAM_POSITION = "p"
PARAM_TIMESTAMP = "ts"
PARAM_SIGNATURE = "sig"

# Unix seconds; anything longer is not a timestamp we could have issued.
MAX_TIMESTAMP_DIGITS = 12


@dataclass(frozen=True)
class SignedLink:
    subject: SubjectKey
    timestamp: int
    signature: str

    def query(self) -> dict[str, str]:
        return {
            PARAM_BRAND: self.subject.brand,
            PARAM_IDENTITY: self.subject.identity,
            PARAM_POSITION: self.subject.position,
            PARAM_TIMESTAMP: str(self.timestamp),
            PARAM_SIGNATURE: self.signature,
        }

    def url(self, base_url: str, path: str = "/verify") -> str:
        return f"{base_url.rstrip('/')}{path}?{urlencode(self.query())}"


class SignedLinkCodec:
    """Stateless, time-bound links: HMAC-SHA256 over the JSON array `[brand, identity, position, ts]`."""

    def __init__(self, settings: VerificationSettings):
        if not settings.link_secret:
            raise ValueError("link secret is required")
        self._secret = settings.link_secret.encode("utf-8")
        self._max_age = settings.link_max_age_seconds
        self._skew = settings.link_clock_skew_seconds

    def _mac(self, subject: SubjectKey, timestamp: int) -> str:
        message = json.dumps(
            [subject.brand, subject.identity, subject.position, timestamp], ensure_ascii=False, separators=(",", ":")
        ).encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def sign(self, subject: SubjectKey, now: datetime | None = None) -> SignedLink:
        ts = int((ensure_utc(now) or utc_now()).timestamp())
        return SignedLink(subject=subject, timestamp=ts, signature=self._mac(subject, ts))

    def verify(
        self,
        subject: SubjectKey,
        timestamp: int,
        signature: str,
        now: datetime | None = None,
        max_age: int | None = None,
    ) -> None:
        # Integrity first: any tampering is a mismatch, whatever the timestamp says.
        expected = self._mac(subject, timestamp)
        if not hmac.compare_digest(expected, str(signature or "")):
            raise SignatureMismatch(details={"reason": "mac"})

        now_ts = int((ensure_utc(now) or utc_now()).timestamp())
        age_limit = self._max_age if max_age is None else max_age
        if timestamp > now_ts + self._skew:
            raise SignatureMismatch(details={"reason": "future_timestamp", "ahead_seconds": timestamp - now_ts})
        if now_ts - timestamp > age_limit:
            raise Expired(
                "This link has expired. Please ask your recruiter for a new one.",
                details={"age_seconds": now_ts - timestamp},
            )

    def verify_query(self, args: Mapping[str, str], now: datetime | None = None) -> SignedLink:
        """Parse link params exactly as emailed and verify them."""
        brand = str(args.get(PARAM_BRAND) or "")
        identity = str(args.get(PARAM_IDENTITY) or "")
        position = str(args.get(PARAM_POSITION) or "")
        ts_raw = str(args.get(PARAM_TIMESTAMP) or "")
        signature = str(args.get(PARAM_SIGNATURE) or "")

        if not (brand and identity and position and signature) or not (ts_raw.isascii() and ts_raw.isdigit()):
            raise SignatureMismatch(details={"reason": "missing_params"})
        if len(ts_raw) > MAX_TIMESTAMP_DIGITS:
            raise SignatureMismatch(details={"reason": "missing_params", "ts_length": len(ts_raw)})
        if KEY_SEPARATOR in brand or KEY_SEPARATOR in identity:
            raise SignatureMismatch(details={"reason": "malformed_subject"})
        if str(int(ts_raw)) != ts_raw:
            raise SignatureMismatch(details={"reason": "non_canonical_timestamp"})

        subject = SubjectKey(identity=identity, brand=brand, position=position)
        timestamp = int(ts_raw)
        self.verify(subject, timestamp, signature, now=now)
        return SignedLink(subject=subject, timestamp=timestamp, signature=signature)
