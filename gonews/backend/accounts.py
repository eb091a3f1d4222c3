from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from gonews.backend.email import EmailService
from gonews.backend.models import PendingRegistration, Session, User
from gonews.backend.otp import OTPService
from gonews.backend.store import MemoryUserStore
from gonews.config import Settings
from gonews.logging import get_logger
from gonews.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)

logger = get_logger(__name__)

REGISTRATION = "registration"
PASSWORD_RESET = "password_reset"

_COMMON_WEAK_PASSWORDS = {
    "password1",
    "password123",
    "qwerty123",
    "12345678a",
    "letmein123",
    "welcome123",
}


def check_password_strength(password: str) -> None:
    """At least 8 characters with upper case, lower case and a digit."""
    if (
        len(password) < 8
        or len(password) > 128
        or not any(c.isupper() for c in password)
        or not any(c.islower() for c in password)
        or not any(c.isdigit() for c in password)
        or password.lower() in _COMMON_WEAK_PASSWORDS
    ):
        raise ValidationError("password does not meet security requirements")


def password_strength_score(password: str) -> int:
    """Score 0-100: length up to 25, character classes up to 40, 35 unless common."""
    score = min(len(password) * 2, 25)
    classes = (
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(unicodedata.category(c)[0] in "PS" for c in password),
    )
    score += 10 * sum(classes)
    if password.lower() not in _COMMON_WEAK_PASSWORDS:
        score += 35
    return min(score, 100)


def strength_label(score: int) -> str:
    if score >= 80:
        return "strong"
    if score >= 60:
        return "moderate"
    if score >= 40:
        return "weak"
    return "very_weak"


@dataclass
class AuthContext:
    user: User
    session_id: str


class AccountService:
    """Users, credentials and JWT sessions for the reference backend."""

    def __init__(
        self,
        store: MemoryUserStore,
        otp: OTPService,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.otp = otp
        self.email = email
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Allowance for small clock skew between client and server
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # Passwords

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, digest: Optional[str], password: str) -> bool:
        if not digest:
            return False
        try:
            return self._pwd_hasher.verify(digest, password)
        except (InvalidHashError, VerificationError):
            return False

    def evaluate_password(self, password: str) -> Dict[str, Any]:
        """Score a candidate password without storing anything."""
        score = password_strength_score(password)
        try:
            check_password_strength(password)
        except ValidationError as exc:
            valid, message = False, exc.message
        else:
            valid, message = True, "Password meets security requirements"
        return {
            "score": score,
            "valid": valid,
            "message": message,
            "strength": strength_label(score),
        }

    # Registration

    def register(self, name: str, email: str, password: str) -> None:
        """Hold the sign-up details and email a registration code."""
        if self.store.get_user_by_email(email):
            raise ConflictError("User with this email already exists")
        check_password_strength(password)
        self.store.save_pending_registration(
            PendingRegistration(email=email, name=name, password_hash=self._hash_password(password))
        )
        self.otp.issue(email, REGISTRATION, name=name)
        logger.info("registration_pending", email=email)

    def verify_registration(self, email: str, code: str) -> None:
        if self.store.get_pending_registration(email) is None:
            raise ValidationError("no pending registration for this email")
        self.otp.verify(email, REGISTRATION, code)

    def complete_registration(self, email: str, name: str, password: str) -> Dict[str, Any]:
        pending = self.store.get_pending_registration(email)
        if pending is None:
            raise ValidationError("no pending registration for this email")
        record = self.otp.require_verified(email, REGISTRATION)
        if not self._verify_hash(pending.password_hash, password):
            raise ValidationError("password does not match the one used to register")
        user = User.new(email=pending.email, name=name or pending.name, is_verified=True)
        self.store.create_user(user, pending.password_hash)
        self.otp.consume(record)
        self.store.delete_pending_registration(email)
        logger.info("registration_completed", user_id=user.id)
        return self._start_session(user, remember_me=False)

    def resend_otp(self, email: str, otp_type: str) -> None:
        name = None
        if otp_type == REGISTRATION:
            pending = self.store.get_pending_registration(email)
            if pending is None:
                raise ValidationError("no pending registration for this email")
            name = pending.name
        elif otp_type == PASSWORD_RESET:
            user = self.store.get_user_by_email(email)
            if user is None:
                # Same answer as a real resend so registered emails cannot be enumerated
                logger.info("otp_resend_unknown_email")
                return
            name = user.name
        self.otp.issue(email, otp_type, name=name)

    # Login and sessions

    def login(self, email: str, password: str, *, remember_me: bool = False) -> Dict[str, Any]:
        user = self.store.get_user_by_email(email)
        if user is None or not self._verify_hash(self.store.get_password_hash(user.id), password):
            logger.info("login_rejected")
            raise AuthenticationError("Invalid email or password")
        if not user.is_active:
            raise ForbiddenError("User account has been deactivated")
        if not user.is_verified:
            raise ForbiddenError("Please verify your email address before logging in")
        user.last_login_at = self._now()
        self.store.save_user(user)
        logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return self._start_session(user, remember_me=remember_me)

    def _refresh_ttl_minutes(self, remember_me: bool) -> int:
        if remember_me:
            return self.settings.remember_me_refresh_ttl_minutes
        return self.settings.refresh_token_ttl_minutes

    def _start_session(self, user: User, *, remember_me: bool) -> Dict[str, Any]:
        session = Session.new(
            user.id, self._refresh_ttl_minutes(remember_me), remember_me=remember_me
        )
        return self._issue_tokens(user, session)

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("token_type") != "refresh":
            raise AuthenticationError("Invalid or expired refresh token")
        session = self.store.get_session(payload.get("sid", ""))
        if session is None or session.revoked or session.expires_at <= self._now():
            raise AuthenticationError("Invalid or expired refresh token")
        if payload.get("jti") != session.refresh_jti:
            # A rotated-out refresh token came back: treat the family as stolen
            logger.warning("refresh_token_reuse_detected", session_id=session.id)
            self.store.revoke_session(session.id)
            raise AuthenticationError("Invalid or expired refresh token")
        user = self.store.get_user(session.user_id)
        if user is None or payload.get("sub") != user.id:
            raise AuthenticationError("Invalid or expired refresh token")
        if not user.is_active:
            raise ForbiddenError("User account has been deactivated")
        return self._issue_tokens(user, session)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        payload = self._decode_jwt(token) if token else None
        if not payload or payload.get("token_type") != "access":
            raise AuthenticationError("User authentication required")
        session = self.store.get_session(payload.get("sid", ""))
        if session is None or session.revoked:
            raise AuthenticationError("Session has been revoked")
        user = self.store.get_user(payload.get("sub", ""))
        if user is None:
            raise AuthenticationError("User authentication required")
        if not user.is_active:
            raise ForbiddenError("User account has been deactivated")
        return AuthContext(user=user, session_id=session.id)

    def logout(self, ctx: AuthContext) -> None:
        self.store.revoke_session(ctx.session_id)
        logger.info("logout", user_id=ctx.user.id, session_id=ctx.session_id)

    # Profile

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, user_id: str, changes: Dict[str, Any]) -> User:
        user = self.get_profile(user_id)
        for field_name, value in changes.items():
            if field_name in {"preferences", "notification_settings", "privacy_settings"}:
                merged = dict(getattr(user, field_name) or {})
                merged.update(value or {})
                setattr(user, field_name, merged)
            else:
                setattr(user, field_name, value)
        user.updated_at = self._now()
        self.store.save_user(user)
        logger.info("profile_updated", user_id=user.id, fields=sorted(changes))
        return user

    def change_password(self, ctx: AuthContext, current_password: str, new_password: str) -> None:
        if not self._verify_hash(self.store.get_password_hash(ctx.user.id), current_password):
            raise AuthenticationError("Current password is incorrect")
        check_password_strength(new_password)
        self.store.save_password(ctx.user.id, self._hash_password(new_password))
        self.email.send_password_changed(ctx.user.email, name=ctx.user.name)
        logger.info("password_changed", user_id=ctx.user.id)

    # Password reset

    def forgot_password(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email")
            return
        self.otp.issue(email, PASSWORD_RESET, name=user.name)

    def verify_password_reset(self, email: str, code: str) -> None:
        self.otp.verify(email, PASSWORD_RESET, code)

    def reset_password(self, email: str, reset_token: str, new_password: str) -> None:
        record = self.otp.require_verified(email, PASSWORD_RESET, reset_token)
        user = self.store.get_user_by_email(email)
        if user is None:
            raise ValidationError("invalid reset token")
        check_password_strength(new_password)
        self.store.save_password(user.id, self._hash_password(new_password))
        self.otp.consume(record)
        revoked = self.store.revoke_user_sessions(user.id)
        self.email.send_password_changed(user.email, name=user.name)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)

    # Tokens

    def _issue_tokens(self, user: User, session: Session) -> Dict[str, Any]:
        now = self._now()
        access_ttl = self.settings.access_token_ttl_minutes * 60
        access_exp = int((now + timedelta(seconds=access_ttl)).timestamp())
        refresh_exp = int(session.expires_at.timestamp())
        refresh_jti = str(uuid.uuid4())
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "sid": session.id,
        }
        access_token = self._encode_jwt(
            {**base, "token_type": "access", "jti": str(uuid.uuid4()), "exp": access_exp}
        )
        refresh_token = self._encode_jwt(
            {**base, "token_type": "refresh", "jti": refresh_jti, "exp": refresh_exp}
        )
        session.refresh_jti = refresh_jti
        self.store.save_session(session)
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "Bearer",
            "expires_in": access_ttl,
            "expires_at": datetime.fromtimestamp(access_exp, timezone.utc).isoformat(),
            "user": user.public(),
        }

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
