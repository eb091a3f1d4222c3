"""Tests for TokenStore persistence, staleness and single-flight refresh."""

import asyncio
from datetime import timedelta

from gonews.service.token_refresher import RefreshResult
from gonews.service.errors import ErrorKind
from gonews.storage.kv import MemoryKeyValueStore
from gonews.storage.models import UserProfile, utcnow
from gonews.storage.token_store import (
    ACCESS_TOKEN_KEY,
    TOKEN_EXPIRY_KEY,
    USER_DATA_KEY,
    TokenStore,
)


class FakeRefresher:
    """Writes a fresh pair the way TokenRefresher does, counting calls."""

    def __init__(self, store: TokenStore, *, succeed: bool = True, delay: float = 0.01):
        self.store = store
        self.succeed = succeed
        self.delay = delay
        self.calls = 0

    async def refresh_stored(self):
        self.calls += 1
        generation = self.store.generation
        await asyncio.sleep(self.delay)
        if not self.succeed:
            return RefreshResult.failed(ErrorKind.UNAUTHORIZED)
        await self.store.store_tokens(
            f"access-{self.calls}", "refresh-next", 900, expected_generation=generation
        )
        return RefreshResult(True, attempts=1)


def _store(**kwargs) -> TokenStore:
    return TokenStore(MemoryKeyValueStore(), **kwargs)


class TestStoreAndClear:
    async def test_store_tokens_records_expiry(self):
        store = _store()
        before = utcnow()
        assert await store.store_tokens("a1", "r1", 3600)

        pair = await store.get_token_pair()
        assert pair.access_token == "a1"
        assert pair.refresh_token == "r1"
        assert before + timedelta(seconds=3590) < pair.expires_at
        assert pair.expires_at <= utcnow() + timedelta(seconds=3600)

    async def test_store_without_expiry_drops_previous_expiry(self):
        store = _store()
        await store.store_tokens("a1", "r1", 60)
        await store.store_tokens("a2", "r2", None)

        assert TOKEN_EXPIRY_KEY not in store.backend.values
        pair = await store.get_token_pair()
        assert pair.expires_at is None
        assert not await store.is_token_stale()

    async def test_each_write_bumps_generation(self):
        store = _store()
        start = store.generation
        await store.store_tokens("a1", "r1", 60)
        await store.clear_tokens()
        assert store.generation == start + 2

    async def test_stale_generation_write_is_discarded(self):
        store = _store()
        generation = store.generation
        await store.store_tokens("login", "r-login", 900)

        accepted = await store.store_tokens(
            "late-refresh", "r-late", 900, expected_generation=generation
        )

        assert accepted is False
        assert (await store.get_token_pair()).access_token == "login"

    async def test_write_after_clear_is_discarded(self):
        store = _store()
        await store.store_tokens("a1", "r1", 900)
        generation = store.generation
        await store.clear_tokens()

        assert not await store.store_tokens("a2", "r2", 900, expected_generation=generation)
        assert await store.get_token_pair() is None

    async def test_clear_removes_tokens_and_user(self):
        store = _store()
        await store.store_tokens("a1", "r1", 900)
        await store.store_user_data(UserProfile(id="7", email="a@b.com", name="Ada"))

        await store.clear_tokens()

        assert store.backend.values == {}
        assert await store.get_user_data() is None
        assert not await store.is_authenticated()


class TestAccessToken:
    async def test_fresh_token_returned_without_refresh(self):
        store = _store()
        refresher = FakeRefresher(store)
        store.attach_refresher(refresher)
        await store.store_tokens("a1", "r1", 3600)

        assert await store.get_access_token() == "a1"
        assert refresher.calls == 0

    async def test_missing_token_returns_none(self):
        store = _store()
        store.attach_refresher(FakeRefresher(store))
        assert await store.get_access_token() is None

    async def test_stale_token_refreshed(self):
        store = _store()
        refresher = FakeRefresher(store)
        store.attach_refresher(refresher)
        await store.store_tokens("old", "r1", 60)

        assert await store.get_access_token() == "access-1"
        assert (await store.get_token_pair()).refresh_token == "refresh-next"

    async def test_concurrent_stale_reads_refresh_once(self):
        store = _store()
        refresher = FakeRefresher(store, delay=0.05)
        store.attach_refresher(refresher)
        await store.store_tokens("old", "r1", 60)

        tokens = await asyncio.gather(*(store.get_access_token() for _ in range(5)))

        assert refresher.calls == 1
        assert set(tokens) == {"access-1"}

    async def test_failed_refresh_clears_tokens(self):
        store = _store()
        store.attach_refresher(FakeRefresher(store, succeed=False))
        await store.store_tokens("old", "r1", 60)

        assert await store.get_access_token() is None
        assert await store.get_token_pair() is None

    async def test_without_refresher_unexpired_token_still_served(self):
        store = _store()
        await store.store_tokens("old", "r1", 60)
        assert await store.get_access_token() == "old"

    async def test_without_refresher_expired_token_cleared(self):
        store = _store()
        await store.store_tokens("old", "r1", 0)
        assert await store.get_access_token() is None
        assert ACCESS_TOKEN_KEY not in store.backend.values

    async def test_unparseable_expiry_treated_as_expired(self):
        store = TokenStore(
            MemoryKeyValueStore(
                {"access_token": "a1", "refresh_token": "r1", "token_expiry": "soon-ish"}
            )
        )
        assert await store.is_token_stale()
        assert await store.get_access_token() is None

    async def test_rejection_after_replacement_skips_refresh(self):
        store = _store()
        refresher = FakeRefresher(store)
        store.attach_refresher(refresher)
        await store.store_tokens("current", "r1", 3600)

        assert await store.refresh_after_rejection("previous") == "current"
        assert refresher.calls == 0

    async def test_rejection_of_current_token_refreshes(self):
        store = _store()
        refresher = FakeRefresher(store)
        store.attach_refresher(refresher)
        await store.store_tokens("current", "r1", 3600)

        assert await store.refresh_after_rejection("current") == "access-1"
        assert refresher.calls == 1


class TestUserData:
    async def test_user_round_trip_and_accessors(self):
        store = _store()
        await store.store_user_data(
            UserProfile(id="42", email="a@b.com", name="Ada", is_verified=True)
        )

        assert await store.get_user_id() == "42"
        assert await store.get_user_email() == "a@b.com"
        assert await store.get_user_name() == "Ada"
        assert (await store.get_user_data()).is_verified is True

    async def test_corrupt_user_blob_reads_as_missing(self):
        store = TokenStore(MemoryKeyValueStore({USER_DATA_KEY: "{not json"}))
        assert await store.get_user_data() is None
        assert await store.get_user_id() is None
