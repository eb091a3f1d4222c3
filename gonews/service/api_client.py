from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from gonews.config import Settings
from gonews.logging import get_logger, sanitize_error_message
from gonews.service import endpoints
from gonews.service.errors import (
    DEFAULT_MESSAGES,
    ErrorKind,
    kind_for_error_code,
)
from gonews.storage.token_store import TokenStore

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}

SessionExpiredCallback = Callable[[], Awaitable[None]]


@dataclass
class ApiResponse:
    """Outcome of one API call; failures never raise."""

    success: bool
    data: Any = None
    message: str = ""
    kind: Optional[ErrorKind] = None
    status_code: Optional[int] = None
    details: Any = None

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> "ApiResponse":
        return cls(
            success=False,
            message=message or DEFAULT_MESSAGES[kind],
            kind=kind,
            status_code=status_code,
            details=details,
        )


def unwrap_envelope(body: Any) -> Any:
    """Return the ``data`` member of a success envelope, or the body itself."""
    if isinstance(body, dict) and "data" in body and (
        "success" in body or "message" in body
    ):
        return body["data"]
    return body


class ApiClient:
    """httpx wrapper for the GoNews auth API.

    Converts every transport and HTTP failure into an ``ApiResponse`` with an
    ``ErrorKind``. Non-public requests carry the bearer token from the
    TokenStore; a 401 on such a request refreshes once and retries once.
    Idempotent GETs are retried on network and server errors with a linearly
    growing delay.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.token_store = token_store
        self.base_url = settings.full_base_url
        self._client = client
        self._transport = transport
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(
                    self.settings.read_timeout_seconds,
                    connect=self.settings.connect_timeout_seconds,
                ),
                headers=DEFAULT_HEADERS,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def on_session_expired(self, callback: SessionExpiredCallback) -> None:
        """Register a coroutine called when a failed refresh drops the session."""
        self.token_store.on_session_lost(callback)

    async def get(self, path: str, *, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        attempts = max(0, self.settings.get_max_retries) + 1
        response = ApiResponse.failure(ErrorKind.UNKNOWN)
        for attempt in range(1, attempts + 1):
            response = await self.request("GET", path, params=params)
            if response.success or response.kind not in (ErrorKind.NETWORK, ErrorKind.SERVER):
                return response
            if attempt < attempts:
                delay = self.settings.get_retry_delay_seconds * attempt
                logger.info(
                    "api_get_retry",
                    path=path,
                    attempt=attempt,
                    max_retries=attempts - 1,
                    delay_seconds=delay,
                    kind=response.kind.value,
                )
                await self._sleep(delay)
        return response

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("PUT", path, json=json)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> ApiResponse:
        public = endpoints.is_public(path)
        token = None if public else await self.token_store.get_access_token()
        result = await self._send(method, path, json=json, params=params, token=token)
        if result.status_code != 401 or public or not token:
            return result

        logger.info("api_unauthorized_refreshing", method=method, path=path)
        new_token = await self.token_store.refresh_after_rejection(token)
        if new_token is None:
            # The store has already dropped the pair and told its listeners
            return ApiResponse.failure(
                ErrorKind.UNAUTHORIZED,
                DEFAULT_MESSAGES[ErrorKind.UNAUTHORIZED],
                status_code=401,
            )
        return await self._send(method, path, json=json, params=params, token=new_token)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
        token: Optional[str],
    ) -> ApiResponse:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        client = await self._get_client()
        try:
            response = await client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as exc:
            logger.warning("api_timeout", method=method, path=path, error=str(exc))
            return ApiResponse.failure(ErrorKind.NETWORK, "Request timed out")
        except httpx.ConnectError as exc:
            logger.warning("api_connect_error", method=method, path=path, error=str(exc))
            return ApiResponse.failure(ErrorKind.NETWORK)
        except httpx.HTTPError as exc:
            logger.warning(
                "api_transport_error",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ApiResponse.failure(
                ErrorKind.NETWORK, sanitize_error_message(str(exc)) if str(exc) else None
            )
        return self._parse(method, path, response)

    def _parse(self, method: str, path: str, response: httpx.Response) -> ApiResponse:
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        if response.is_success:
            message = body.get("message", "") if isinstance(body, dict) else ""
            return ApiResponse(
                success=True,
                data=unwrap_envelope(body),
                message=message or "",
                status_code=response.status_code,
            )

        code = None
        message = None
        details = None
        if isinstance(body, dict):
            code = body.get("code")
            details = body.get("details")
            raw_message = body.get("message")
            if not raw_message and isinstance(body.get("error"), str):
                raw_message = body["error"]
            if isinstance(raw_message, str) and raw_message:
                message = raw_message
        kind = kind_for_error_code(code if isinstance(code, str) else None, response.status_code)
        log_fn = logger.error if response.status_code >= 500 else logger.info
        log_fn(
            "api_error_response",
            method=method,
            path=path,
            status_code=response.status_code,
            error_code=code,
            kind=kind.value,
        )
        return ApiResponse.failure(
            kind, message, status_code=response.status_code, details=details
        )
