from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from gonews.logging import get_logger
from gonews.service import endpoints
from gonews.service.api_client import ApiClient, ApiResponse
from gonews.service.errors import ErrorKind
from gonews.storage.models import UserProfile
from gonews.storage.token_store import TokenStore

logger = get_logger(__name__)

# Remote logout is best effort; local tokens are cleared no matter what the
# server says.
LOCAL_FIRST_LOGOUT = "local_first"

UPDATABLE_PROFILE_FIELDS = frozenset(
    {
        "name",
        "phone",
        "location",
        "avatar_url",
        "date_of_birth",
        "gender",
        "preferences",
        "notification_settings",
        "privacy_settings",
    }
)


@dataclass
class AuthResult:
    success: bool
    message: str = ""
    user: Optional[UserProfile] = None
    kind: Optional[ErrorKind] = None
    data: Any = None

    @classmethod
    def from_failure(cls, response: ApiResponse) -> "AuthResult":
        return cls(False, response.message, kind=response.kind or ErrorKind.UNKNOWN)

    @classmethod
    def error(cls, kind: ErrorKind, message: str) -> "AuthResult":
        return cls(False, message, kind=kind)


class AuthService:
    """Thin layer over the auth endpoints that keeps the TokenStore in sync."""

    def __init__(self, api_client: ApiClient, token_store: TokenStore) -> None:
        self.api_client = api_client
        self.token_store = token_store

    async def store_session(self, data: Any, *, message: str) -> AuthResult:
        """Persist the token pair and user carried by a login-style response."""
        if not isinstance(data, dict) or not data.get("access_token"):
            logger.error("auth_response_missing_tokens")
            return AuthResult.error(ErrorKind.SERVER, "Malformed response from server")
        user = None
        if data.get("user") is not None:
            try:
                user = UserProfile.from_backend(data["user"])
            except ValueError as exc:
                logger.warning("auth_response_user_invalid", error=str(exc))
        expires_in = data.get("expires_in")
        await self.token_store.store_tokens(
            data["access_token"],
            data.get("refresh_token") or "",
            int(expires_in) if isinstance(expires_in, (int, float)) else None,
        )
        if user is not None:
            await self.token_store.store_user_data(user)
        return AuthResult(True, message, user=user, data=data)

    async def login(self, email: str, password: str, *, remember_me: bool = False) -> AuthResult:
        response = await self.api_client.post(
            endpoints.LOGIN,
            {"email": email, "password": password, "remember_me": remember_me},
        )
        if not response.success:
            logger.info("login_failed", kind=response.kind.value if response.kind else None)
            return AuthResult.from_failure(response)
        result = await self.store_session(response.data, message=response.message or "Welcome back!")
        if result.success:
            logger.info("login_succeeded", user_id=result.user.id if result.user else None)
        return result

    async def logout(self) -> AuthResult:
        """Best-effort remote logout followed by an unconditional local clear."""
        response = await self.api_client.post(endpoints.LOGOUT)
        if not response.success:
            logger.warning(
                "remote_logout_failed",
                policy=LOCAL_FIRST_LOGOUT,
                kind=response.kind.value if response.kind else None,
                status_code=response.status_code,
            )
        await self.token_store.clear_tokens()
        return AuthResult(True, "Logged out successfully")

    async def get_profile(self) -> AuthResult:
        response = await self.api_client.get(endpoints.ME)
        if not response.success:
            return AuthResult.from_failure(response)
        return await self._store_profile(response.data, "Profile fetched successfully")

    async def update_profile(self, **fields: Any) -> AuthResult:
        unknown = sorted(set(fields) - UPDATABLE_PROFILE_FIELDS)
        if unknown:
            return AuthResult.error(
                ErrorKind.VALIDATION, f"Unsupported profile fields: {', '.join(unknown)}"
            )
        payload = {k: v for k, v in fields.items() if v is not None}
        if not payload:
            return AuthResult.error(ErrorKind.VALIDATION, "Nothing to update")
        response = await self.api_client.put(endpoints.ME, payload)
        if not response.success:
            return AuthResult.from_failure(response)
        return await self._store_profile(response.data, "Profile updated successfully")

    async def _store_profile(self, data: Any, message: str) -> AuthResult:
        if isinstance(data, dict) and isinstance(data.get("user"), dict):
            data = data["user"]
        try:
            user = UserProfile.from_backend(data)
        except ValueError as exc:
            logger.error("profile_response_invalid", error=str(exc))
            return AuthResult.error(ErrorKind.SERVER, "Malformed response from server")
        await self.token_store.store_user_data(user)
        return AuthResult(True, message, user=user)

    async def change_password(self, current_password: str, new_password: str) -> AuthResult:
        response = await self.api_client.post(
            endpoints.CHANGE_PASSWORD,
            {"current_password": current_password, "new_password": new_password},
        )
        if not response.success:
            return AuthResult.from_failure(response)
        return AuthResult(True, response.message or "Password changed successfully")

    async def check_password_strength(self, password: str) -> AuthResult:
        """Ask the backend to score ``password``; the score lands in ``data``.

        ``success`` reflects the call, not the password: read ``data["valid"]``.
        """
        response = await self.api_client.post(endpoints.CHECK_PASSWORD, {"password": password})
        if not response.success:
            return AuthResult.from_failure(response)
        data = response.data
        if not isinstance(data, dict) or not isinstance(data.get("score"), int):
            logger.error("password_check_response_invalid")
            return AuthResult.error(ErrorKind.SERVER, "Malformed response from server")
        return AuthResult(True, data.get("message") or response.message, data=data)

    async def is_authenticated(self) -> bool:
        return await self.token_store.is_authenticated()

    async def get_current_user(self) -> Optional[UserProfile]:
        return await self.token_store.get_user_data()
