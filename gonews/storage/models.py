from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime] = None

    @classmethod
    def issue(
        cls,
        access_token: str,
        refresh_token: str,
        expires_in_seconds: Optional[int],
        *,
        now: Optional[datetime] = None,
    ) -> "TokenPair":
        expires_at = None
        if expires_in_seconds is not None:
            expires_at = (now or utcnow()) + timedelta(seconds=int(expires_in_seconds))
        return cls(access_token, refresh_token, expires_at)

    def expires_within(self, seconds: int, *, now: Optional[datetime] = None) -> bool:
        """True when the access token expires inside the given window.

        A pair without an expiry never goes stale.
        """
        if self.expires_at is None:
            return False
        return (now or utcnow()) + timedelta(seconds=seconds) >= self.expires_at


_PROFILE_FIELDS = {
    "id",
    "email",
    "name",
    "phone",
    "is_verified",
    "preferences",
    "location",
    "avatar_url",
    "is_active",
}


@dataclass
class UserProfile:
    id: str
    email: str
    name: str = ""
    phone: Optional[str] = None
    is_verified: bool = False
    preferences: Optional[Dict[str, Any]] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_backend(cls, data: Dict[str, Any]) -> "UserProfile":
        """Build a profile from the user object the auth API returns.

        Missing fields fall back to defaults and numeric or UUID ids are
        stringified; unknown keys are kept in ``extra``.
        """
        if not isinstance(data, dict):
            raise ValueError("user payload must be an object")
        raw_id = data.get("id")
        if raw_id is None or raw_id == "":
            raise ValueError("user payload is missing id")
        preferences = data.get("preferences")
        return cls(
            id=str(raw_id),
            email=str(data.get("email") or ""),
            name=str(data.get("name") or ""),
            phone=data.get("phone") or None,
            is_verified=bool(data.get("is_verified", False)),
            preferences=preferences if isinstance(preferences, dict) else None,
            location=data.get("location") or None,
            avatar_url=data.get("avatar_url") or None,
            is_active=bool(data.get("is_active", True)),
            extra={k: v for k, v in data.items() if k not in _PROFILE_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "email": self.email,
                "name": self.name,
                "phone": self.phone,
                "is_verified": self.is_verified,
                "preferences": self.preferences,
                "location": self.location,
                "avatar_url": self.avatar_url,
                "is_active": self.is_active,
            }
        )
        return payload
