from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from gonews.config import Settings
from gonews.logging import get_logger
from gonews.service import endpoints
from gonews.service.api_client import ApiClient
from gonews.service.errors import DEFAULT_MESSAGES, ErrorKind
from gonews.storage.token_store import TokenStore

logger = get_logger(__name__)


@dataclass
class RefreshResult:
    success: bool
    kind: Optional[ErrorKind] = None
    message: str = ""
    attempts: int = 0

    @classmethod
    def failed(cls, kind: ErrorKind, message: Optional[str] = None, *, attempts: int = 0) -> "RefreshResult":
        return cls(False, kind, message or DEFAULT_MESSAGES[kind], attempts)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure breaker with a single half-open trial call."""

    def __init__(
        self,
        failure_threshold: int,
        cooldown_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def allow(self) -> bool:
        if self.failure_threshold <= 0 or self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.HALF_OPEN:
            # A trial call is already in flight
            return False
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            self._state = CircuitState.HALF_OPEN
            logger.info("refresh_circuit_half_open")
            return True
        return False

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("refresh_circuit_closed")
        self._state = CircuitState.CLOSED
        self._failures = 0

    def record_failure(self) -> None:
        self._failures += 1
        if self.failure_threshold <= 0:
            return
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "refresh_circuit_opened",
                consecutive_failures=self._failures,
                cooldown_seconds=self.cooldown_seconds,
            )


def _coerce_expires_in(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("refresh_expires_in_invalid", value=value)
        return None


class TokenRefresher:
    """Exchanges a refresh token for a new token pair.

    Transient failures (network, server, rate limited) are retried with full
    jitter backoff; rejected or malformed refresh tokens fail immediately. A
    circuit breaker stops hammering the refresh endpoint after repeated
    failures. Existing tokens are never touched on failure.
    """

    def __init__(
        self,
        api_client: ApiClient,
        token_store: TokenStore,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api_client = api_client
        self.token_store = token_store
        self.max_attempts = max(1, settings.refresh_max_attempts)
        self.backoff_base = settings.refresh_backoff_base_seconds
        self.backoff_max = settings.refresh_backoff_max_seconds
        self.circuit = CircuitBreaker(
            settings.refresh_circuit_failure_threshold,
            settings.refresh_circuit_cooldown_seconds,
            clock=clock,
        )
        self._sleep = sleep
        self._jitter = jitter

    def _backoff_delay(self, attempt: int) -> float:
        ceiling = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        return self._jitter(0.0, ceiling)

    async def refresh_stored(self) -> RefreshResult:
        generation = self.token_store.generation
        refresh_token = await self.token_store.get_refresh_token()
        return await self.refresh(refresh_token or "", expected_generation=generation)

    async def refresh(
        self, refresh_token: str, *, expected_generation: Optional[int] = None
    ) -> RefreshResult:
        if not refresh_token:
            logger.info("refresh_skipped_no_token")
            return RefreshResult.failed(ErrorKind.VALIDATION, "No refresh token available")

        if not self.circuit.allow():
            logger.warning("refresh_short_circuited", state=self.circuit.state.value)
            return RefreshResult.failed(ErrorKind.CIRCUIT_OPEN)

        attempt = 0
        while True:
            attempt += 1
            response = await self.api_client.post(
                endpoints.REFRESH, {"refresh_token": refresh_token}
            )
            if response.success:
                return await self._apply(response.data, refresh_token, attempt, expected_generation)

            kind = response.kind or ErrorKind.UNKNOWN
            if not kind.retryable or attempt >= self.max_attempts:
                logger.warning(
                    "refresh_failed",
                    kind=kind.value,
                    status_code=response.status_code,
                    attempts=attempt,
                )
                self.circuit.record_failure()
                return RefreshResult.failed(kind, response.message, attempts=attempt)

            delay = self._backoff_delay(attempt)
            logger.info(
                "refresh_retry_scheduled",
                kind=kind.value,
                attempt=attempt,
                delay_seconds=round(delay, 3),
            )
            await self._sleep(delay)

    async def _apply(
        self,
        data: Any,
        previous_refresh_token: str,
        attempts: int,
        expected_generation: Optional[int],
    ) -> RefreshResult:
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            logger.error("refresh_response_malformed", attempts=attempts)
            self.circuit.record_failure()
            return RefreshResult.failed(
                ErrorKind.SERVER, "Malformed refresh response", attempts=attempts
            )
        self.circuit.record_success()
        stored = await self.token_store.store_tokens(
            access_token,
            data.get("refresh_token") or previous_refresh_token,
            _coerce_expires_in(data.get("expires_in")),
            expected_generation=expected_generation,
        )
        if not stored:
            # The session changed under us; the fresh pair belongs to nobody
            logger.info("refresh_result_discarded", attempts=attempts)
            return RefreshResult.failed(
                ErrorKind.CONFLICT, "Session changed during refresh", attempts=attempts
            )
        logger.info("refresh_succeeded", attempts=attempts)
        return RefreshResult(True, attempts=attempts, message="Token refreshed")
