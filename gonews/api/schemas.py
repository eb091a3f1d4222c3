from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class SuccessEnvelope(BaseModel):
    success: Literal[True] = True
    message: str = ""
    data: Optional[Any] = None


class ErrorEnvelope(BaseModel):
    """Error body with a stable ``code`` value."""

    error: Literal[True] = True
    message: str
    code: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_OTP_CODE = re.compile(r"^\d{6}$")


def _normalize_unicode(value: str) -> str:
    # Drop zero-width characters before NFKC so lookalike emails collapse
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_length(value: str) -> str:
    """Length bounds only; strength rules live in the account service."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_otp_code(value: str) -> str:
    value = value.strip()
    if not _OTP_CODE.match(value):
        raise ValueError("OTP code must be 6 digits")
    return value


def _validate_name(value: str) -> str:
    value = _normalize_unicode(value).strip()
    if len(value) < 2:
        raise ValueError("name must be at least 2 characters")
    return value


class _EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailRequest):
    name: str = Field(..., max_length=100)
    password: str

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_length(value)


class VerifyOTPRequest(_EmailRequest):
    code: str

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        return _validate_otp_code(value)


class CompleteRegistrationRequest(RegisterRequest):
    pass


class LoginRequest(_EmailRequest):
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(_EmailRequest):
    pass


class ResetPasswordRequest(_EmailRequest):
    reset_token: str = Field(..., min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_length(value)


class ResendOTPRequest(_EmailRequest):
    otp_type: Literal["registration", "password_reset"]


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    location: Optional[str] = Field(default=None, max_length=200)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    date_of_birth: Optional[str] = None
    gender: Optional[str] = Field(default=None, max_length=32)
    preferences: Optional[Dict[str, Any]] = None
    notification_settings: Optional[Dict[str, Any]] = None
    privacy_settings: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_dump(exclude_none=True):
            raise ValueError("no profile fields to update")
        return self


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_length(value)


class PasswordCheckRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=256)
