from __future__ import annotations

import base64
import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol

import redis.asyncio as aioredis
from cryptography.fernet import Fernet, InvalidToken
from redis.exceptions import RedisError

from gonews.config import Settings, TokenStoreBackend
from gonews.logging import get_logger
from gonews.storage.errors import StorageError

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set_many(self, values: Mapping[str, str]) -> None: ...

    async def delete(self, *keys: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store; contents vanish with the process."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set_many(self, values: Mapping[str, str]) -> None:
        self.values.update(values)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self.values.pop(key, None)


class FileKeyValueStore:
    """JSON document on disk, optionally Fernet-encrypted at rest.

    Every write replaces the whole document through a temp file and rename so a
    crash mid-write leaves the previous session intact.
    """

    def __init__(self, path: str | Path, *, encryption_key: str | None = None) -> None:
        self.path = Path(path).expanduser()
        self._cipher = (
            Fernet(self._derive_cipher_key(encryption_key)) if encryption_key else None
        )

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _read(self) -> Dict[str, str]:
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StorageError(
                f"failed to read session file: {exc}", detail={"path": str(self.path)}
            ) from exc
        if not raw:
            return {}
        if self._cipher:
            try:
                raw = self._cipher.decrypt(raw)
            except InvalidToken as exc:
                raise StorageError(
                    "session file cannot be decrypted with the configured key",
                    detail={"path": str(self.path)},
                ) from exc
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise StorageError(
                "session file is not valid JSON", detail={"path": str(self.path)}
            ) from exc
        if not isinstance(data, dict):
            raise StorageError(
                "session file has unexpected layout", detail={"path": str(self.path)}
            )
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: Dict[str, str]) -> None:
        payload = json.dumps(data, indent=2).encode()
        if self._cipher:
            payload = self._cipher.encrypt(payload)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise StorageError(
                f"failed to persist session file: {exc}", detail={"path": str(self.path)}
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    async def set_many(self, values: Mapping[str, str]) -> None:
        data = self._read()
        data.update(values)
        self._write(data)

    async def delete(self, *keys: str) -> None:
        data = self._read()
        changed = False
        for key in keys:
            if key in data:
                data.pop(key)
                changed = True
        if changed:
            self._write(data)


class RedisKeyValueStore:
    """Namespaced keys in Redis, for clients sharing a session across processes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        prefix: str = "gonews:session:",
        client: Optional[aioredis.Redis] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url is required when no client is supplied")
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageError(f"redis read failed: {exc}", key=key) from exc
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def set_many(self, values: Mapping[str, str]) -> None:
        if not values:
            return
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for key, value in values.items():
                    pipe.set(self._key(key), value)
                await pipe.execute()
        except RedisError as exc:
            raise StorageError(f"redis write failed: {exc}") from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.client.delete(*(self._key(k) for k in keys))
        except RedisError as exc:
            raise StorageError(f"redis delete failed: {exc}") from exc


def build_key_value_store(settings: Settings) -> KeyValueStore:
    backend = settings.token_store_backend
    if backend == TokenStoreBackend.MEMORY:
        store: KeyValueStore = MemoryKeyValueStore()
    elif backend == TokenStoreBackend.REDIS:
        if not settings.redis_url:
            raise StorageError("REDIS_URL must be set for the redis token store")
        store = RedisKeyValueStore(settings.redis_url, prefix=settings.redis_key_prefix)
    else:
        store = FileKeyValueStore(
            settings.token_store_path,
            encryption_key=settings.token_store_encryption_key,
        )
    logger.info(
        "token_store_backend_selected",
        backend=backend.value,
        encrypted=bool(settings.token_store_encryption_key)
        if backend == TokenStoreBackend.FILE
        else None,
    )
    return store
