from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from gonews.backend.email import EmailService
from gonews.backend.models import OTPRecord
from gonews.backend.store import MemoryUserStore
from gonews.config import Settings
from gonews.logging import get_logger
from gonews.service.errors import RateLimitedError, ServerError, ValidationError

logger = get_logger(__name__)

OTP_PURPOSES = frozenset({"registration", "password_reset"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPService:
    """Issues and checks 6-digit one-time codes sent by email.

    A new code for an (email, purpose) replaces the previous one. Codes expire,
    allow a bounded number of wrong guesses, and are single use. Requests per
    email are capped per hour and per day, with a cooldown between codes.
    """

    def __init__(
        self,
        store: MemoryUserStore,
        email: EmailService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.email = email
        self.settings = settings
        self._now = clock

    @staticmethod
    def generate_code() -> str:
        return str(secrets.randbelow(900000) + 100000)

    def _check_rate_limit(self, email: str, now: datetime) -> None:
        hourly = self.store.otp_requests_since(email, now - timedelta(hours=1))
        daily = self.store.otp_requests_since(email, now - timedelta(days=1))
        if hourly >= self.settings.otp_hourly_limit or daily >= self.settings.otp_daily_limit:
            logger.warning("otp_rate_limited", email=email, hourly=hourly, daily=daily)
            raise RateLimitedError("too many OTP requests, please try again later")

    def _check_cooldown(self, email: str, purpose: str, now: datetime) -> None:
        cooldown = self.settings.otp_resend_cooldown_seconds
        existing = self.store.get_otp(email, purpose)
        if not cooldown or existing is None:
            return
        ready_at = existing.created_at + timedelta(seconds=cooldown)
        if now < ready_at:
            remaining = int((ready_at - now).total_seconds()) + 1
            raise RateLimitedError(
                f"please wait {remaining} seconds before requesting another OTP",
                detail={"retry_after_seconds": remaining},
            )

    def issue(self, email: str, purpose: str, *, name: Optional[str] = None) -> OTPRecord:
        if purpose not in OTP_PURPOSES:
            raise ValidationError("invalid OTP type", detail={"otp_type": purpose})
        now = self._now()
        self._check_rate_limit(email, now)
        self._check_cooldown(email, purpose, now)
        record = OTPRecord(
            email=email,
            purpose=purpose,
            code=self.generate_code(),
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.otp_expiry_minutes),
        )
        self.store.save_otp(record)
        self.store.record_otp_request(email, now, keep_after=now - timedelta(days=1))
        sent = self.email.send_otp(
            email,
            name=name,
            code=record.code,
            purpose=purpose,
            expires_minutes=self.settings.otp_expiry_minutes,
        )
        if not sent:
            self.store.delete_otp(email, purpose)
            raise ServerError("OTP service temporarily unavailable")
        logger.info("otp_issued", email=email, purpose=purpose)
        return record

    def _live_record(self, email: str, purpose: str, now: datetime) -> OTPRecord:
        record = self.store.get_otp(email, purpose)
        if record is None:
            raise ValidationError("invalid or expired OTP code")
        if record.used:
            raise ValidationError("OTP code has already been used")
        if now >= record.expires_at:
            raise ValidationError("OTP code has expired, please request a new one")
        return record

    def verify(self, email: str, purpose: str, code: str) -> OTPRecord:
        now = self._now()
        record = self._live_record(email, purpose, now)
        max_attempts = self.settings.otp_max_attempts
        if record.attempts >= max_attempts:
            raise ValidationError("maximum OTP attempts exceeded, please request a new code")
        record.attempts += 1
        if not hmac.compare_digest(record.code, code or ""):
            logger.info(
                "otp_verify_mismatch",
                email=email,
                purpose=purpose,
                attempts=record.attempts,
            )
            if record.attempts >= max_attempts:
                raise ValidationError(
                    "maximum OTP attempts exceeded, please request a new code"
                )
            raise ValidationError(
                "invalid OTP code",
                detail={"attempts_remaining": max_attempts - record.attempts},
            )
        record.verified = True
        logger.info("otp_verified", email=email, purpose=purpose)
        return record

    def require_verified(self, email: str, purpose: str, code: Optional[str] = None) -> OTPRecord:
        """Return the verified record, optionally checking it against ``code``."""
        record = self._live_record(email, purpose, self._now())
        if not record.verified:
            raise ValidationError("please verify the OTP code first")
        if code is not None and not hmac.compare_digest(record.code, code):
            raise ValidationError("invalid reset token")
        return record

    def consume(self, record: OTPRecord) -> None:
        record.used = True
        self.store.save_otp(record)
