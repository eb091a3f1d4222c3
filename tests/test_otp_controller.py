"""Tests for the client-side OTP flow controller."""

import json

import httpx

from gonews.service.errors import ErrorKind
from gonews.service.otp import OTPPurpose, OTPStep
from gonews.service.runtime import Runtime
from gonews.service.session import Initial
from gonews.storage.kv import MemoryKeyValueStore

USER = {"id": "u-1", "email": "a@b.com", "name": "Ada", "is_verified": True}


class RecordingServer:
    def __init__(self, replies=None):
        self.replies = dict(replies or {})
        self.bodies = []

    def __call__(self, request):
        path = request.url.path.removeprefix("/api/v1")
        self.bodies.append((path, json.loads(request.content) if request.content else None))
        status, body = self.replies.get(path, (200, {"success": True, "message": "ok", "data": None}))
        return httpx.Response(status, json=body)


def _runtime(settings, server):
    return Runtime(
        settings, kv_store=MemoryKeyValueStore(), transport=httpx.MockTransport(server)
    )


def _complete_reply():
    return (
        200,
        {
            "success": True,
            "message": "Registration completed successfully",
            "data": {
                "access_token": "a1",
                "refresh_token": "r1",
                "expires_in": 900,
                "token_type": "Bearer",
                "user": USER,
            },
        },
    )


class TestRegistrationFlow:
    async def test_three_steps_advance_challenge(self, settings):
        server = RecordingServer({"/auth/complete-registration": _complete_reply()})
        rt = _runtime(settings, server)
        otp = rt.otp

        sent = await otp.send_registration_otp("Ada", "a@b.com", "Secret123")
        assert sent.success
        assert otp.challenge.step == OTPStep.CODE_SENT
        assert otp.challenge.purpose == OTPPurpose.REGISTRATION

        verified = await otp.verify_registration_otp("a@b.com", "123456")
        assert verified.success
        assert otp.challenge.step == OTPStep.VERIFIED
        assert otp.challenge.code == "123456"

        done = await otp.complete_registration("a@b.com", "Ada", "Secret123")
        assert done.success
        assert done.user.email == "a@b.com"
        assert otp.challenge is None
        assert done.data["access_token"] == "a1"
        # Persisting the pair is left to the session manager
        assert await rt.token_store.get_token_pair() is None
        assert isinstance(rt.session.state, Initial)

        assert server.bodies == [
            ("/auth/register", {"name": "Ada", "email": "a@b.com", "password": "Secret123"}),
            ("/auth/verify-registration-otp", {"email": "a@b.com", "code": "123456"}),
            (
                "/auth/complete-registration",
                {"email": "a@b.com", "name": "Ada", "password": "Secret123"},
            ),
        ]

    async def test_malformed_code_rejected_locally(self, settings):
        server = RecordingServer()
        rt = _runtime(settings, server)

        result = await rt.otp.verify_registration_otp("a@b.com", "12ab")

        assert result.kind == ErrorKind.VALIDATION
        assert server.bodies == []

    async def test_missing_email_rejected_locally(self, settings):
        server = RecordingServer()
        rt = _runtime(settings, server)

        result = await rt.otp.send_registration_otp("Ada", "  ", "Secret123")

        assert result.kind == ErrorKind.VALIDATION
        assert server.bodies == []

    async def test_out_of_order_step_still_sent(self, settings):
        server = RecordingServer(
            {
                "/auth/complete-registration": (
                    400,
                    {"error": True, "message": "please verify the OTP code first", "code": "validation_error"},
                )
            }
        )
        rt = _runtime(settings, server)

        result = await rt.otp.complete_registration("a@b.com", "Ada", "Secret123")

        assert result.message == "please verify the OTP code first"
        assert result.kind == ErrorKind.VALIDATION
        assert [path for path, _ in server.bodies] == ["/auth/complete-registration"]

    async def test_server_error_message_surfaces(self, settings):
        server = RecordingServer(
            {
                "/auth/register": (
                    409,
                    {"error": True, "message": "User with this email already exists", "code": "conflict"},
                )
            }
        )
        rt = _runtime(settings, server)

        result = await rt.otp.send_registration_otp("Ada", "a@b.com", "Secret123")

        assert not result.success
        assert result.kind == ErrorKind.CONFLICT
        assert result.message == "User with this email already exists"
        assert rt.otp.challenge is None

    async def test_cancel_drops_challenge(self, settings):
        rt = _runtime(settings, RecordingServer())
        await rt.otp.send_registration_otp("Ada", "a@b.com", "Secret123")

        rt.otp.cancel()

        assert rt.otp.challenge is None

    def test_challenge_repr_hides_password(self, settings):
        from gonews.service.otp import OTPChallenge

        challenge = OTPChallenge(
            "a@b.com", OTPPurpose.REGISTRATION, OTPStep.CODE_SENT, password="Secret123"
        )
        assert "Secret123" not in repr(challenge)


class TestPasswordResetFlow:
    async def test_reset_flow(self, settings):
        server = RecordingServer()
        rt = _runtime(settings, server)
        otp = rt.otp

        assert (await otp.send_password_reset_otp("a@b.com")).success
        assert otp.challenge.purpose == OTPPurpose.PASSWORD_RESET

        assert (await otp.verify_password_reset_otp("a@b.com", "654321")).success
        assert otp.challenge.step == OTPStep.VERIFIED

        assert (await otp.reset_password("a@b.com", "654321", "NewSecret1")).success
        assert otp.challenge is None
        assert server.bodies[-1] == (
            "/auth/reset-password",
            {"email": "a@b.com", "reset_token": "654321", "new_password": "NewSecret1"},
        )

    async def test_reset_requires_token_and_password(self, settings):
        server = RecordingServer()
        rt = _runtime(settings, server)

        result = await rt.otp.reset_password("a@b.com", "", "NewSecret1")

        assert result.kind == ErrorKind.VALIDATION
        assert server.bodies == []


class TestResend:
    async def test_resend_posts_otp_type(self, settings):
        server = RecordingServer()
        rt = _runtime(settings, server)

        result = await rt.otp.resend_otp("a@b.com", "password_reset")

        assert result.success
        assert server.bodies == [
            ("/auth/resend-otp", {"email": "a@b.com", "otp_type": "password_reset"})
        ]

    async def test_unknown_purpose_rejected(self, settings):
        server = RecordingServer()
        rt = _runtime(settings, server)

        result = await rt.otp.resend_otp("a@b.com", "login")

        assert result.kind == ErrorKind.VALIDATION
        assert server.bodies == []

    async def test_rate_limited_resend(self, settings):
        server = RecordingServer(
            {
                "/auth/resend-otp": (
                    429,
                    {
                        "error": True,
                        "message": "too many OTP requests, please try again later",
                        "code": "rate_limited",
                    },
                )
            }
        )
        rt = _runtime(settings, server)

        result = await rt.otp.resend_otp("a@b.com", OTPPurpose.REGISTRATION)

        assert result.kind == ErrorKind.RATE_LIMITED
