from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class VerificationSettings:
    """Knobs shared by the engines. Rotating a secret means building a new value."""

    link_secret: str
    code_pepper: str
    link_max_age_seconds: int = 7 * 24 * 3600
    link_clock_skew_seconds: int = 300
    otp_expiry_minutes: int = 10
    otp_max_attempts: int = 3
    token_expiry_hours: int = 48
    public_base_url: str = "http://localhost:5002"
    cas_retries: int = 5

    @classmethod
    def from_config(cls, cfg) -> "VerificationSettings":
        return cls(
            link_secret=cfg.LINK_SECRET,
            code_pepper=cfg.PEPPER,
            link_max_age_seconds=max(60, cfg.LINK_MAX_AGE_SECONDS),
            link_clock_skew_seconds=max(0, cfg.LINK_CLOCK_SKEW_SECONDS),
            otp_expiry_minutes=max(1, cfg.OTP_EXPIRY_MINUTES),
            otp_max_attempts=max(1, cfg.OTP_MAX_ATTEMPTS),
            token_expiry_hours=max(1, cfg.TOKEN_EXPIRY_HOURS),
            public_base_url=cfg.PUBLIC_BASE_URL,
        )
