from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from gonews.config import Settings, get_settings, reset_settings_cache
from gonews.logging import get_logger
from gonews.service.api_client import ApiClient
from gonews.service.auth import AuthService
from gonews.service.otp import OTPFlowController
from gonews.service.session import AuthSessionManager
from gonews.service.token_refresher import TokenRefresher
from gonews.storage.kv import KeyValueStore, build_key_value_store
from gonews.storage.token_store import TokenStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Composition root for the client session stack."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        kv_store: Optional[KeyValueStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            api_base_url=self.settings.full_base_url,
            kv_backend=self.settings.token_store_backend.value,
            redis_url=_mask_url_password(self.settings.redis_url),
            test_mode=self.settings.test_mode,
        )
        self.kv_store = kv_store or build_key_value_store(self.settings)
        self.token_store = TokenStore(
            self.kv_store,
            refresh_threshold_seconds=self.settings.token_refresh_threshold_seconds,
        )
        self.api_client = ApiClient(self.settings, self.token_store, transport=transport)
        self.token_refresher = TokenRefresher(
            self.api_client, self.token_store, self.settings
        )
        # The refresher needs the store and the store needs the refresher
        self.token_store.attach_refresher(self.token_refresher)
        self.auth = AuthService(self.api_client, self.token_store)
        self.otp = OTPFlowController(self.auth)
        self.session = AuthSessionManager(self.auth, self.otp)
        logger.info("runtime_init_completed")

    async def close(self) -> None:
        await self.api_client.aclose()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the cached runtime and settings so tests see a fresh environment."""
    global runtime
    with _runtime_lock:
        runtime = None
        reset_settings_cache()
