"""Tests for ApiClient: bearer handling, refresh-and-retry and error mapping."""

import httpx
import pytest

from gonews.service import endpoints
from gonews.service.api_client import ApiClient, unwrap_envelope
from gonews.service.errors import ErrorKind
from gonews.service.token_refresher import TokenRefresher
from gonews.storage.kv import MemoryKeyValueStore
from gonews.storage.token_store import TokenStore


class Backend:
    """Scripted server: /auth/me accepts only ``valid_token``."""

    def __init__(self, valid_token="a2", refresh_ok=True):
        self.valid_token = valid_token
        self.refresh_ok = refresh_ok
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v1")
        if path == endpoints.REFRESH:
            if not self.refresh_ok:
                return httpx.Response(
                    401,
                    json={"error": True, "message": "Invalid or expired refresh token", "code": "unauthorized"},
                )
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "message": "Token refreshed successfully",
                    "data": {"access_token": "a2", "refresh_token": "r2", "expires_in": 900},
                },
            )
        if request.headers.get("authorization") != f"Bearer {self.valid_token}":
            return httpx.Response(
                401, json={"error": True, "message": "Unauthorized", "code": "unauthorized"}
            )
        return httpx.Response(
            200,
            json={"success": True, "message": "ok", "data": {"id": 1, "email": "a@b.com"}},
        )


def _build(settings, handler, sleeps=None):
    store = TokenStore(MemoryKeyValueStore())
    recorded = sleeps if sleeps is not None else []

    async def _sleep(seconds):
        recorded.append(seconds)

    client = ApiClient(settings, store, transport=httpx.MockTransport(handler), sleep=_sleep)
    refresher = TokenRefresher(client, store, settings, sleep=_sleep)
    store.attach_refresher(refresher)
    return client, store


class TestBearer:
    async def test_private_request_carries_token(self, settings):
        backend = Backend(valid_token="a1")
        client, store = _build(settings, backend)
        await store.store_tokens("a1", "r1", 3600)

        response = await client.get(endpoints.ME)

        assert response.success
        assert response.data == {"id": 1, "email": "a@b.com"}
        assert backend.requests[0].headers["authorization"] == "Bearer a1"

    async def test_public_request_has_no_token(self, settings):
        backend = Backend()
        client, store = _build(settings, backend)
        await store.store_tokens("a1", "r1", 3600)

        await client.post(endpoints.LOGIN, {"email": "a@b.com", "password": "x"})

        assert "authorization" not in backend.requests[0].headers

    async def test_401_refreshes_and_retries_once(self, settings):
        backend = Backend(valid_token="a2")
        client, store = _build(settings, backend)
        await store.store_tokens("a1", "r1", 3600)

        response = await client.get(endpoints.ME)

        assert response.success
        paths = [r.url.path for r in backend.requests]
        assert paths == ["/api/v1/auth/me", "/api/v1/auth/refresh", "/api/v1/auth/me"]
        assert backend.requests[-1].headers["authorization"] == "Bearer a2"
        assert (await store.get_token_pair()).refresh_token == "r2"

    async def test_retry_still_401_is_reported_not_looped(self, settings):
        backend = Backend(valid_token="never")
        client, store = _build(settings, backend)
        await store.store_tokens("a1", "r1", 3600)

        response = await client.put(endpoints.ME, {"name": "Ada"})

        assert response.kind == ErrorKind.UNAUTHORIZED
        assert len(backend.requests) == 3

    async def test_failed_refresh_clears_and_notifies(self, settings):
        backend = Backend(valid_token="a2", refresh_ok=False)
        client, store = _build(settings, backend)
        await store.store_tokens("a1", "r1", 3600)
        notified = []

        async def _expired():
            notified.append(True)

        client.on_session_expired(_expired)

        response = await client.get(endpoints.ME)

        assert response.kind == ErrorKind.UNAUTHORIZED
        assert notified == [True]
        assert await store.get_token_pair() is None

    async def test_public_401_is_not_refreshed(self, settings):
        def handler(request):
            return httpx.Response(
                401,
                json={"error": True, "message": "Invalid email or password", "code": "unauthorized"},
            )

        client, store = _build(settings, handler)
        await store.store_tokens("a1", "r1", 3600)

        response = await client.post(endpoints.LOGIN, {"email": "a@b.com", "password": "x"})

        assert response.message == "Invalid email or password"
        assert (await store.get_token_pair()).access_token == "a1"


class TestRetriesAndErrors:
    async def test_get_retried_on_server_error(self, settings):
        settings = settings.model_copy(update={"get_max_retries": 2, "get_retry_delay_seconds": 1.5})
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(502, text="bad gateway")
            return httpx.Response(200, json={"success": True, "data": {"ok": True}})

        sleeps = []
        client, _ = _build(settings, handler, sleeps)

        response = await client.get("/news")

        assert response.success
        assert sleeps == [1.5, 3.0]

    async def test_post_not_retried(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"error": True, "message": "boom", "code": "server_error"})

        client, _ = _build(settings, handler)
        response = await client.post(endpoints.REGISTER, {"email": "a@b.com"})

        assert response.kind == ErrorKind.SERVER
        assert response.message == "boom"
        assert len(calls) == 1

    async def test_get_not_retried_on_client_error(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, json={"error": True, "message": "User not found", "code": "not_found"})

        client, _ = _build(settings, handler)
        response = await client.get("/news/1")

        assert response.kind == ErrorKind.NOT_FOUND
        assert len(calls) == 1

    @pytest.mark.parametrize(
        "status,code,kind",
        [
            (400, "validation_error", ErrorKind.VALIDATION),
            (403, "forbidden", ErrorKind.FORBIDDEN),
            (409, "conflict", ErrorKind.CONFLICT),
            (429, "rate_limited", ErrorKind.RATE_LIMITED),
            (418, None, ErrorKind.UNKNOWN),
        ],
    )
    async def test_error_envelope_mapping(self, settings, status, code, kind):
        body = {"error": True, "message": "backend says no"}
        if code:
            body["code"] = code

        client, _ = _build(settings, lambda request: httpx.Response(status, json=body))
        response = await client.post(endpoints.REGISTER, {})

        assert response.kind == kind
        assert response.message == "backend says no"
        assert response.status_code == status

    async def test_non_json_error_gets_generic_message(self, settings):
        client, _ = _build(settings, lambda request: httpx.Response(500, text="<html>oops</html>"))
        response = await client.post(endpoints.REGISTER, {})

        assert response.kind == ErrorKind.SERVER
        assert response.message == "Server error. Please try again later"

    async def test_timeout_maps_to_network(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, _ = _build(settings, handler)
        response = await client.post(endpoints.LOGIN, {})

        assert response.kind == ErrorKind.NETWORK
        assert response.message == "Request timed out"

    async def test_connect_error_maps_to_network(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client, _ = _build(settings, handler)
        response = await client.post(endpoints.LOGIN, {})

        assert response.kind == ErrorKind.NETWORK


class TestEnvelope:
    def test_unwrap_success_envelope(self):
        assert unwrap_envelope({"success": True, "message": "m", "data": {"x": 1}}) == {"x": 1}

    def test_bare_body_passes_through(self):
        assert unwrap_envelope({"access_token": "a"}) == {"access_token": "a"}
        assert unwrap_envelope(None) is None
