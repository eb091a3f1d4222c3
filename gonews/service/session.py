from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, List, Optional, Union

from gonews.logging import get_logger
from gonews.service.auth import AuthResult, AuthService
from gonews.service.errors import DEFAULT_MESSAGES, ErrorKind
from gonews.service.otp import OTPFlowController, OTPResult
from gonews.storage.errors import StorageError
from gonews.storage.models import UserProfile

logger = get_logger(__name__)


class AuthStatus(str, Enum):
    INITIAL = "initial"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    ERROR = "error"


@dataclass(frozen=True)
class Initial:
    status: ClassVar[AuthStatus] = AuthStatus.INITIAL


@dataclass(frozen=True)
class Loading:
    status: ClassVar[AuthStatus] = AuthStatus.LOADING


@dataclass(frozen=True)
class Authenticated:
    user: UserProfile
    status: ClassVar[AuthStatus] = AuthStatus.AUTHENTICATED

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def user_email(self) -> str:
        return self.user.email

    @property
    def user_name(self) -> str:
        return self.user.name

    @property
    def is_verified(self) -> bool:
        return self.user.is_verified


@dataclass(frozen=True)
class Unauthenticated:
    status: ClassVar[AuthStatus] = AuthStatus.UNAUTHENTICATED


@dataclass(frozen=True)
class Error:
    message: str
    kind: ErrorKind = ErrorKind.UNKNOWN
    status: ClassVar[AuthStatus] = AuthStatus.ERROR


AuthState = Union[Initial, Loading, Authenticated, Unauthenticated, Error]
StateListener = Callable[[AuthState], Any]


class AuthSessionManager:
    """Owns the auth session state machine.

    Every transition runs under one asyncio.Lock, so overlapping calls queue
    and apply in the order they were issued. The token pair is kept present
    exactly when the state is Authenticated: failures that leave the session
    unusable clear the local tokens in the same transition.
    """

    def __init__(self, auth_service: AuthService, otp: OTPFlowController) -> None:
        self.auth_service = auth_service
        self.token_store = auth_service.token_store
        self.otp = otp
        self._lock = asyncio.Lock()
        self._state: AuthState = Initial()
        self._listeners: List[StateListener] = []
        self.history: List[AuthState] = [self._state]
        self.token_store.on_session_lost(self._handle_session_expired)

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self._state, Authenticated)

    @property
    def current_user(self) -> Optional[UserProfile]:
        return self._state.user if isinstance(self._state, Authenticated) else None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_state(self, new_state: AuthState) -> None:
        previous = self._state
        self._state = new_state
        self.history.append(new_state)
        logger.info(
            "auth_state_changed",
            previous=previous.status.value,
            current=new_state.status.value,
        )
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as exc:
                logger.error(
                    "auth_state_listener_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def _fail(self, message: str, kind: Optional[ErrorKind]) -> None:
        if await self.token_store.get_token_pair() is not None:
            await self.token_store.clear_tokens()
        kind = kind or ErrorKind.UNKNOWN
        self._set_state(Error(message or DEFAULT_MESSAGES[kind], kind))

    def _storage_failure(self, exc: StorageError) -> None:
        logger.error("auth_storage_failure", error=exc.message, key=exc.key)
        self._set_state(Error(DEFAULT_MESSAGES[ErrorKind.STORAGE], ErrorKind.STORAGE))

    async def start(self) -> AuthState:
        """Restore a persisted session, if there is one."""
        async with self._lock:
            self._set_state(Loading())
            try:
                if not await self.auth_service.is_authenticated():
                    self._set_state(Unauthenticated())
                    return self._state
                result = await self.auth_service.get_profile()
                if result.success and result.user is not None:
                    self._set_state(Authenticated(result.user))
                else:
                    logger.info(
                        "session_restore_failed",
                        kind=result.kind.value if result.kind else None,
                    )
                    await self.token_store.clear_tokens()
                    self._set_state(Unauthenticated())
            except StorageError as exc:
                self._storage_failure(exc)
                raise
            return self._state

    async def login(
        self, email: str, password: str, *, remember_me: bool = False
    ) -> AuthResult:
        async with self._lock:
            self._set_state(Loading())
            try:
                result = await self.auth_service.login(
                    email, password, remember_me=remember_me
                )
                if result.success and result.user is not None:
                    self._set_state(Authenticated(result.user))
                elif result.success:
                    # Token response without a user object: fetch it
                    profile = await self.auth_service.get_profile()
                    if profile.success and profile.user is not None:
                        result.user = profile.user
                        self._set_state(Authenticated(profile.user))
                    else:
                        await self._fail(profile.message, profile.kind)
                        return AuthResult(False, profile.message, kind=profile.kind)
                else:
                    await self._fail(result.message, result.kind)
            except StorageError as exc:
                self._storage_failure(exc)
                raise
            return result

    async def logout(self) -> AuthResult:
        async with self._lock:
            self._set_state(Loading())
            try:
                result = await self.auth_service.logout()
            except StorageError as exc:
                self._storage_failure(exc)
                raise
            self.otp.cancel()
            self._set_state(Unauthenticated())
            return result

    async def register(self, name: str, email: str, password: str) -> OTPResult:
        """Step 1 of sign-up; the session stays signed out until completion."""
        async with self._lock:
            self._set_state(Loading())
            try:
                # Registration always starts from a signed-out session
                if await self.token_store.get_token_pair() is not None:
                    await self.token_store.clear_tokens()
                result = await self.otp.send_registration_otp(name, email, password)
                if result.success:
                    self._set_state(Unauthenticated())
                else:
                    await self._fail(result.message, result.kind)
            except StorageError as exc:
                self._storage_failure(exc)
                raise
            return result

    async def verify_registration_otp(self, email: str, code: str) -> OTPResult:
        async with self._lock:
            self._set_state(Loading())
            try:
                result = await self.otp.verify_registration_otp(email, code)
                if result.success:
                    self._set_state(Unauthenticated())
                else:
                    await self._fail(result.message, result.kind)
            except StorageError as exc:
                self._storage_failure(exc)
                raise
            return result

    async def complete_registration(self, email: str, name: str, password: str) -> OTPResult:
        """Final sign-up step; stores the issued pair and signs the user in."""
        async with self._lock:
            self._set_state(Loading())
            try:
                result = await self.otp.complete_registration(email, name, password)
                if not result.success:
                    await self._fail(result.message, result.kind)
                    return result
                stored = await self.auth_service.store_session(result.data, message=result.message)
                if not stored.success:
                    await self._fail(stored.message, stored.kind)
                    return OTPResult(False, stored.message, kind=stored.kind)
                user = stored.user
                if user is None:
                    profile = await self.auth_service.get_profile()
                    user = profile.user if profile.success else None
                if user is None:
                    await self._fail("Could not load your profile", ErrorKind.SERVER)
                    return OTPResult(False, "Could not load your profile", kind=ErrorKind.SERVER)
                result.user = user
                self._set_state(Authenticated(user))
            except StorageError as exc:
                self._storage_failure(exc)
                raise
            return result

    async def refresh_profile(self) -> AuthResult:
        """Re-fetch the profile; only an unauthorized reply ends the session."""
        async with self._lock:
            result = await self.auth_service.get_profile()
            await self._apply_profile_result(result)
            return result

    async def update_profile(self, **fields: Any) -> AuthResult:
        async with self._lock:
            result = await self.auth_service.update_profile(**fields)
            await self._apply_profile_result(result)
            return result

    async def _apply_profile_result(self, result: AuthResult) -> None:
        if result.success and result.user is not None:
            if isinstance(self._state, Authenticated):
                self._set_state(Authenticated(result.user))
            return
        if result.kind == ErrorKind.UNAUTHORIZED:
            await self._expire_locked()
        else:
            logger.info(
                "profile_operation_failed",
                kind=result.kind.value if result.kind else None,
            )

    async def clear_error(self) -> None:
        async with self._lock:
            if isinstance(self._state, Error):
                self._set_state(Unauthenticated())

    async def expire_session(self) -> None:
        """Drop the session after an unrecoverable 401."""
        async with self._lock:
            await self._expire_locked()

    async def _expire_locked(self) -> None:
        await self.token_store.clear_tokens()
        if not isinstance(self._state, Unauthenticated):
            logger.info("session_expired", previous=self._state.status.value)
            self._set_state(Unauthenticated())

    async def _handle_session_expired(self) -> None:
        if self._lock.locked():
            # The transition in flight applies its own outcome
            return
        await self.expire_session()
