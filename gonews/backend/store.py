from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from gonews.backend.models import OTPRecord, PendingRegistration, Session, User
from gonews.logging import get_logger
from gonews.storage.errors import ConstraintViolation


class MemoryUserStore:
    """In-process user, session and OTP store for the reference backend.

    Users, credentials and sessions are written to ``state_path`` as JSON after
    every change when a path is given. OTP records, pending registrations and
    request counters are ephemeral.
    """

    def __init__(self, state_path: str | Path | None = None) -> None:
        self.logger = get_logger(__name__)
        self.state_path = Path(state_path).expanduser() if state_path else None
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.pending: Dict[str, PendingRegistration] = {}
        self.otps: Dict[tuple[str, str], OTPRecord] = {}
        self.otp_requests: Dict[str, List[datetime]] = {}
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()
        if self.state_path is not None:
            self._load_state()

    @staticmethod
    def _email_key(email: str) -> str:
        return email.strip().lower()

    # Users

    def create_user(self, user: User, password_hash: str) -> User:
        with self._data_lock:
            if self.get_user_by_email(user.email):
                raise ConstraintViolation(
                    "User with this email already exists", {"field": "email"}
                )
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        key = self._email_key(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email.lower() == key), None)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            self.credentials[user_id] = password_hash
            self._persist_state()

    # Registrations awaiting OTP verification

    def save_pending_registration(self, pending: PendingRegistration) -> None:
        with self._data_lock:
            self.pending[self._email_key(pending.email)] = pending

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._data_lock:
            return self.pending.get(self._email_key(email))

    def delete_pending_registration(self, email: str) -> None:
        with self._data_lock:
            self.pending.pop(self._email_key(email), None)

    # Sessions

    def save_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session and not session.revoked:
                session.revoked = True
                self._persist_state()

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.user_id == user_id and not session.revoked:
                    session.revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # OTP codes

    def save_otp(self, record: OTPRecord) -> None:
        with self._data_lock:
            self.otps[(self._email_key(record.email), record.purpose)] = record

    def get_otp(self, email: str, purpose: str) -> Optional[OTPRecord]:
        with self._data_lock:
            return self.otps.get((self._email_key(email), purpose))

    def delete_otp(self, email: str, purpose: str) -> None:
        with self._data_lock:
            self.otps.pop((self._email_key(email), purpose), None)

    def record_otp_request(self, email: str, at: datetime, *, keep_after: datetime) -> None:
        """Remember an OTP request, forgetting ones older than ``keep_after``."""
        with self._data_lock:
            stamps = self.otp_requests.setdefault(self._email_key(email), [])
            stamps[:] = [s for s in stamps if s >= keep_after]
            stamps.append(at)

    def otp_requests_since(self, email: str, since: datetime) -> int:
        with self._data_lock:
            stamps = self.otp_requests.get(self._email_key(email), [])
            return sum(1 for s in stamps if s >= since)

    # Persistence

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": digest}
                for user_id, digest in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, self.state_path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist backend state: {exc}") from exc

    def _load_state(self) -> bool:
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "backend_state_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        data = user.public()
        data["updated_at"] = self._serialize_datetime(user.updated_at)
        return data

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            phone=data.get("phone"),
            location=data.get("location"),
            avatar_url=data.get("avatar_url"),
            date_of_birth=data.get("date_of_birth"),
            gender=data.get("gender"),
            preferences=data.get("preferences") or {},
            notification_settings=data.get("notification_settings") or {},
            privacy_settings=data.get("privacy_settings") or {},
            is_active=data.get("is_active", True),
            is_verified=data.get("is_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or self._deserialize_datetime(data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "refresh_jti": session.refresh_jti,
            "remember_me": session.remember_me,
            "revoked": session.revoked,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            refresh_jti=data.get("refresh_jti"),
            remember_me=data.get("remember_me", False),
            revoked=data.get("revoked", False),
        )
