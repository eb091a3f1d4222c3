from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple

from gonews.logging import get_logger
from gonews.storage.kv import KeyValueStore
from gonews.storage.models import TokenPair, UserProfile, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
TOKEN_EXPIRY_KEY = "token_expiry"
USER_DATA_KEY = "user_data"

DEFAULT_REFRESH_THRESHOLD_SECONDS = 300

SessionLostListener = Callable[[], Awaitable[None]]


class Refresher(Protocol):
    async def refresh_stored(self) -> Any: ...


class TokenStore:
    """Durable home of the session token pair and the cached user profile.

    The store is the only writer of the persisted keys. Every write and clear
    bumps ``generation``; writers that captured an older generation (a refresh
    that raced a logout or a new login) are rejected instead of resurrecting a
    dead session.

    ``get_access_token`` refreshes a stale token through the attached
    refresher. Concurrent callers share one refresh: they queue on a lock and
    re-check the stored pair once they get it.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        *,
        refresh_threshold_seconds: int = DEFAULT_REFRESH_THRESHOLD_SECONDS,
        refresher: Optional[Refresher] = None,
    ) -> None:
        self.backend = backend
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self._refresher = refresher
        self._refresh_lock = asyncio.Lock()
        self._generation = 0
        self._session_lost_listeners: List[SessionLostListener] = []

    @property
    def generation(self) -> int:
        return self._generation

    def attach_refresher(self, refresher: Refresher) -> None:
        self._refresher = refresher

    async def store_tokens(
        self,
        access_token: str,
        refresh_token: str,
        expires_in_seconds: Optional[int] = None,
        *,
        expected_generation: Optional[int] = None,
    ) -> bool:
        """Persist a new token pair; returns False if the write was stale."""
        if expected_generation is not None and expected_generation != self._generation:
            logger.info(
                "token_write_discarded",
                expected_generation=expected_generation,
                generation=self._generation,
            )
            return False
        pair = TokenPair.issue(access_token, refresh_token, expires_in_seconds)
        # Claim the generation before awaiting the backend so a concurrent
        # writer holding the old value is rejected.
        self._generation += 1
        values = {
            ACCESS_TOKEN_KEY: pair.access_token,
            REFRESH_TOKEN_KEY: pair.refresh_token,
        }
        if pair.expires_at is not None:
            values[TOKEN_EXPIRY_KEY] = pair.expires_at.isoformat()
        await self.backend.set_many(values)
        if pair.expires_at is None:
            await self.backend.delete(TOKEN_EXPIRY_KEY)
        logger.info(
            "tokens_stored",
            generation=self._generation,
            expires_at=pair.expires_at.isoformat() if pair.expires_at else None,
        )
        return True

    async def clear_tokens(self, *, expected_generation: Optional[int] = None) -> bool:
        if expected_generation is not None and expected_generation != self._generation:
            logger.info(
                "token_clear_discarded",
                expected_generation=expected_generation,
                generation=self._generation,
            )
            return False
        self._generation += 1
        await self.backend.delete(
            ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY, USER_DATA_KEY
        )
        logger.info("tokens_cleared", generation=self._generation)
        return True

    async def get_token_pair(self) -> Optional[TokenPair]:
        access = await self.backend.get(ACCESS_TOKEN_KEY)
        if not access:
            return None
        refresh = await self.backend.get(REFRESH_TOKEN_KEY) or ""
        raw_expiry = await self.backend.get(TOKEN_EXPIRY_KEY)
        return TokenPair(access, refresh, self._parse_expiry(raw_expiry))

    @staticmethod
    def _parse_expiry(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        try:
            expires_at = datetime.fromisoformat(raw)
        except ValueError:
            # An unreadable expiry is treated as already expired
            logger.warning("token_expiry_unparseable", raw=raw)
            return utcnow()
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at

    async def get_refresh_token(self) -> Optional[str]:
        return await self.backend.get(REFRESH_TOKEN_KEY) or None

    async def is_token_stale(self) -> bool:
        pair = await self.get_token_pair()
        if pair is None:
            return False
        return pair.expires_within(self.refresh_threshold_seconds)

    async def get_access_token(self) -> Optional[str]:
        pair = await self.get_token_pair()
        if pair is None:
            return None
        if not pair.expires_within(self.refresh_threshold_seconds):
            return pair.access_token

        async with self._refresh_lock:
            token, lost = await self._fresh_token_locked()
        if lost:
            await self._notify_session_lost(reason="stale")
        return token

    async def _fresh_token_locked(self) -> Tuple[Optional[str], bool]:
        # Another caller may have refreshed (or cleared) while we waited
        pair = await self.get_token_pair()
        if pair is None:
            return None, False
        if not pair.expires_within(self.refresh_threshold_seconds):
            return pair.access_token, False
        if self._refresher is None:
            if pair.expires_at is not None and pair.expires_at > utcnow():
                return pair.access_token, False
            logger.warning("token_expired_without_refresher")
            return None, await self.clear_tokens(expected_generation=self._generation)
        return await self._refresh_locked(reason="stale")

    async def refresh_after_rejection(self, rejected_token: str) -> Optional[str]:
        """Refresh after the server rejected ``rejected_token`` with a 401.

        If another caller already replaced the token, the replacement is
        returned without a second refresh.
        """
        lost = False
        async with self._refresh_lock:
            pair = await self.get_token_pair()
            if pair is None:
                token = None
            elif pair.access_token != rejected_token:
                token = pair.access_token
            elif self._refresher is None:
                token = None
                lost = await self.clear_tokens(expected_generation=self._generation)
            else:
                token, lost = await self._refresh_locked(reason="rejected")
        if lost:
            await self._notify_session_lost(reason="rejected")
        return token

    async def _refresh_locked(self, *, reason: str) -> Tuple[Optional[str], bool]:
        generation = self._generation
        logger.info("token_refresh_triggered", reason=reason, generation=generation)
        result = await self._refresher.refresh_stored()
        if getattr(result, "success", False):
            refreshed = await self.get_token_pair()
            return (refreshed.access_token if refreshed else None), False

        logger.warning(
            "token_refresh_failed_clearing",
            reason=reason,
            kind=getattr(getattr(result, "kind", None), "value", None),
        )
        return None, await self.clear_tokens(expected_generation=generation)

    def on_session_lost(self, listener: SessionLostListener) -> None:
        """Register a coroutine run after the store drops an unrecoverable session.

        Fires when a failed refresh (or an expired token with no refresher)
        clears the pair, never for an explicit ``clear_tokens`` call.
        """
        self._session_lost_listeners.append(listener)

    async def _notify_session_lost(self, *, reason: str) -> None:
        logger.info("session_lost", reason=reason)
        for listener in list(self._session_lost_listeners):
            try:
                await listener()
            except Exception as exc:
                logger.error(
                    "session_lost_listener_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def is_authenticated(self) -> bool:
        return await self.get_access_token() is not None

    async def store_user_data(self, profile: UserProfile) -> None:
        await self.backend.set_many({USER_DATA_KEY: json.dumps(profile.to_dict())})

    async def get_user_data(self) -> Optional[UserProfile]:
        raw = await self.backend.get(USER_DATA_KEY)
        if not raw:
            return None
        try:
            return UserProfile.from_backend(json.loads(raw))
        except ValueError as exc:
            logger.warning("user_data_corrupt", error=str(exc))
            return None

    async def get_user_id(self) -> Optional[str]:
        profile = await self.get_user_data()
        return profile.id if profile else None

    async def get_user_email(self) -> Optional[str]:
        profile = await self.get_user_data()
        return profile.email if profile else None

    async def get_user_name(self) -> Optional[str]:
        profile = await self.get_user_data()
        return profile.name if profile else None
