from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_preferences() -> Dict[str, Any]:
    return {
        "preferred_language": "en",
        "default_category": "general",
        "articles_per_page": 20,
        "preferred_sources": [],
        "blocked_sources": [],
        "preferred_regions": ["india"],
        "content_filter_level": "moderate",
        "show_images": True,
        "auto_refresh": True,
        "refresh_interval_minutes": 30,
    }


def default_notification_settings() -> Dict[str, Any]:
    return {
        "push_enabled": True,
        "breaking_news": True,
        "daily_digest": True,
        "digest_time": "08:00",
        "categories": ["general", "business", "technology", "sports"],
        "email_notifications": False,
        "weekly_newsletter": False,
        "market_alerts": True,
        "sports_updates": True,
        "tech_news": True,
    }


def default_privacy_settings() -> Dict[str, Any]:
    return {
        "profile_visibility": "public",
        "reading_history": True,
        "personalized_ads": False,
        "data_sharing": False,
        "analytics_tracking": True,
        "location_tracking": False,
    }


@dataclass
class User:
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    preferences: Dict[str, Any] = field(default_factory=default_preferences)
    notification_settings: Dict[str, Any] = field(default_factory=default_notification_settings)
    privacy_settings: Dict[str, Any] = field(default_factory=default_privacy_settings)
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    @classmethod
    def new(cls, email: str, name: str, **kwargs: Any) -> "User":
        return cls(id=str(uuid.uuid4()), email=email, name=name, **kwargs)

    def public(self) -> Dict[str, Any]:
        """The user as sent to clients; never includes credentials."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "location": self.location,
            "avatar_url": self.avatar_url,
            "date_of_birth": self.date_of_birth,
            "gender": self.gender,
            "preferences": self.preferences,
            "notification_settings": self.notification_settings,
            "privacy_settings": self.privacy_settings,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "created_at": self.created_at.isoformat(),
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class Session:
    """One login; access and refresh tokens carry its id as ``sid``."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    refresh_jti: Optional[str] = None
    remember_me: bool = False
    revoked: bool = False

    @classmethod
    def new(cls, user_id: str, ttl_minutes: int, *, remember_me: bool = False) -> "Session":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            remember_me=remember_me,
        )


@dataclass
class PendingRegistration:
    email: str
    name: str
    password_hash: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OTPRecord:
    email: str
    purpose: str
    code: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    verified: bool = False
    used: bool = False
