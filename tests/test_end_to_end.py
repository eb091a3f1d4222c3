"""End-to-end flows: the session client talking to the reference backend over ASGI."""

import asyncio
import json
from datetime import timedelta

import httpx

from gonews import cli
from gonews.service.errors import ErrorKind
from gonews.service.runtime import Runtime
from gonews.service.session import Authenticated, Error, Unauthenticated
from gonews.storage.kv import MemoryKeyValueStore


class CountingTransport(httpx.ASGITransport):
    def __init__(self, app):
        super().__init__(app=app)
        self.paths = []

    async def handle_async_request(self, request):
        self.paths.append(request.url.path)
        return await super().handle_async_request(request)


class TestLoginFlows:
    async def test_wrong_password(self, runtime, demo_credentials):
        email, _ = demo_credentials

        result = await runtime.session.login(email, "wrong")

        assert not result.success
        assert runtime.session.state == Error("Invalid email or password", ErrorKind.UNAUTHORIZED)
        assert await runtime.token_store.get_token_pair() is None

    async def test_login_then_restore_in_new_runtime(self, settings, backend_app, demo_credentials):
        email, password = demo_credentials
        kv = MemoryKeyValueStore()
        first = Runtime(settings, kv_store=kv, transport=httpx.ASGITransport(app=backend_app))

        await first.session.login(email, password)
        assert isinstance(first.session.state, Authenticated)
        await first.close()

        second = Runtime(settings, kv_store=kv, transport=httpx.ASGITransport(app=backend_app))
        state = await second.session.start()

        assert isinstance(state, Authenticated)
        assert state.user_email == email
        await second.close()

    async def test_logout_revokes_server_session(self, runtime, backend_app, demo_credentials):
        email, password = demo_credentials
        await runtime.session.login(email, password)
        token = (await runtime.token_store.get_token_pair()).access_token

        await runtime.session.logout()

        assert isinstance(runtime.session.state, Unauthenticated)
        assert await runtime.token_store.get_token_pair() is None
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=backend_app), base_url="http://testserver"
        ) as raw:
            resp = await raw.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    async def test_server_side_revocation_expires_client_session(
        self, runtime, backend_app, demo_credentials
    ):
        email, password = demo_credentials
        await runtime.session.login(email, password)
        user_id = runtime.session.current_user.id
        backend_app.state.store.revoke_user_sessions(user_id)

        result = await runtime.session.refresh_profile()

        assert result.kind == ErrorKind.UNAUTHORIZED
        assert isinstance(runtime.session.state, Unauthenticated)
        assert await runtime.token_store.get_token_pair() is None


class TestRegistrationFlow:
    async def test_otp_registration_signs_in(self, runtime, otp_code):
        session = runtime.session

        sent = await session.register("Ada", "a@b.com", "Secret123")
        assert sent.success
        assert isinstance(session.state, Unauthenticated)

        verified = await session.verify_registration_otp("a@b.com", otp_code("a@b.com"))
        assert verified.success
        assert isinstance(session.state, Unauthenticated)

        done = await session.complete_registration("a@b.com", "Ada", "Secret123")

        assert done.success
        assert isinstance(session.state, Authenticated)
        assert session.state.user_email == "a@b.com"
        assert session.state.is_verified
        assert await runtime.token_store.get_user_name() == "Ada"

    async def test_complete_without_verification_errors(self, runtime):
        await runtime.session.register("Ada", "a@b.com", "Secret123")

        result = await runtime.session.complete_registration("a@b.com", "Ada", "Secret123")

        assert not result.success
        assert runtime.session.state == Error(
            "please verify the OTP code first", ErrorKind.VALIDATION
        )
        assert await runtime.token_store.get_token_pair() is None

    async def test_duplicate_registration(self, runtime, demo_credentials):
        email, _ = demo_credentials

        result = await runtime.session.register("Demo", email, "Secret123")

        assert result.kind == ErrorKind.CONFLICT
        assert runtime.session.state.message == "User with this email already exists"


class TestPasswordReset:
    async def test_reset_then_login(self, runtime, demo_credentials, otp_code):
        email, password = demo_credentials
        otp = runtime.otp

        assert (await otp.send_password_reset_otp(email)).success
        code = otp_code(email)
        assert (await otp.verify_password_reset_otp(email, code)).success
        assert (await otp.reset_password(email, code, "Reset12345")).success

        assert not (await runtime.session.login(email, password)).success
        assert (await runtime.session.login(email, "Reset12345")).success


class TestPasswordCheck:
    async def test_score_without_session(self, runtime):
        result = await runtime.auth.check_password_strength("Secret123")

        assert result.success
        assert result.data["score"] == 83
        assert result.data["strength"] == "strong"
        assert result.message == "Password meets security requirements"
        assert await runtime.token_store.get_token_pair() is None

    async def test_weak_password_still_succeeds(self, runtime):
        result = await runtime.auth.check_password_strength("password1")

        assert result.success
        assert result.data["valid"] is False
        assert result.data["strength"] == "very_weak"


class TestRefresh:
    async def test_concurrent_requests_share_one_refresh(self, settings, backend_app, demo_credentials):
        email, password = demo_credentials
        transport = CountingTransport(backend_app)
        rt = Runtime(settings, kv_store=MemoryKeyValueStore(), transport=transport)
        await rt.session.login(email, password)

        # Age the stored access token into the refresh window
        pair = await rt.token_store.get_token_pair()
        await rt.token_store.store_tokens(pair.access_token, pair.refresh_token, 5)

        results = await asyncio.gather(*(rt.auth.get_profile() for _ in range(5)))

        assert all(r.success for r in results)
        assert transport.paths.count("/api/v1/auth/refresh") == 1
        assert not await rt.token_store.is_token_stale()
        await rt.close()

    async def test_access_token_stays_valid_after_refresh(self, runtime, demo_credentials):
        email, password = demo_credentials
        await runtime.session.login(email, password)
        before = await runtime.token_store.get_token_pair()

        result = await runtime.token_refresher.refresh_stored()

        after = await runtime.token_store.get_token_pair()
        assert result.success
        assert after.refresh_token != before.refresh_token
        assert after.expires_at - before.expires_at < timedelta(minutes=1)
        assert (await runtime.session.refresh_profile()).success


class TestCli:
    def test_login_and_status(self, runtime, demo_credentials, monkeypatch, capsys):
        email, password = demo_credentials
        monkeypatch.setattr(cli, "get_runtime", lambda: runtime)

        code = cli.main(["login", "--email", email, "--password", password])
        out = json.loads(capsys.readouterr().out)

        assert code == 0
        assert out["state"] == "authenticated"
        assert out["user"]["email"] == email

        code = cli.main(["status"])
        out = json.loads(capsys.readouterr().out)
        assert code == 0
        assert out["status"] == "authenticated"

    def test_failed_login_exit_code(self, runtime, demo_credentials, monkeypatch, capsys):
        email, _ = demo_credentials
        monkeypatch.setattr(cli, "get_runtime", lambda: runtime)

        code = cli.main(["login", "--email", email, "--password", "wrong"])
        out = json.loads(capsys.readouterr().out)

        assert code == 1
        assert out["kind"] == "unauthorized"
        assert out["message"] == "Invalid email or password"
