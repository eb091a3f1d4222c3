from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from gonews.logging import get_logger
from gonews.service import endpoints
from gonews.service.auth import AuthService
from gonews.service.errors import ErrorKind
from gonews.storage.models import UserProfile

logger = get_logger(__name__)

OTP_CODE_PATTERN = re.compile(r"^\d{6}$")


class OTPPurpose(str, Enum):
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


class OTPStep(str, Enum):
    CODE_SENT = "code_sent"
    VERIFIED = "verified"
    COMPLETED = "completed"


@dataclass
class OTPChallenge:
    email: str
    purpose: OTPPurpose
    step: OTPStep
    code: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)


@dataclass
class OTPResult:
    success: bool
    message: str = ""
    kind: Optional[ErrorKind] = None
    user: Optional[UserProfile] = None
    data: Any = None


def _invalid(message: str) -> OTPResult:
    return OTPResult(False, message, kind=ErrorKind.VALIDATION)


class OTPFlowController:
    """Drives the three-step registration and password-reset OTP flows.

    The server is the authority on step ordering: calls made out of order are
    sent anyway and only logged here. The in-memory challenge records how far
    the current flow got and is dropped on success or ``cancel()``.
    """

    def __init__(self, auth_service: AuthService) -> None:
        self.auth_service = auth_service
        self.api_client = auth_service.api_client
        self._challenge: Optional[OTPChallenge] = None

    @property
    def challenge(self) -> Optional[OTPChallenge]:
        return self._challenge

    def cancel(self) -> None:
        if self._challenge is not None:
            logger.info(
                "otp_flow_cancelled",
                purpose=self._challenge.purpose.value,
                step=self._challenge.step.value,
            )
        self._challenge = None

    def _note_order(self, purpose: OTPPurpose, email: str, required: OTPStep) -> None:
        current = self._challenge
        if (
            current is None
            or current.purpose != purpose
            or current.email != email
            or current.step != required
        ):
            logger.info(
                "otp_step_out_of_order",
                purpose=purpose.value,
                required_step=required.value,
                current_step=current.step.value if current else None,
            )

    @staticmethod
    def _check_email(email: str) -> Optional[OTPResult]:
        if not email or not email.strip():
            return _invalid("Email is required")
        return None

    @staticmethod
    def _check_code(code: str) -> Optional[OTPResult]:
        if not code or not OTP_CODE_PATTERN.match(code):
            return _invalid("Please enter the 6-digit code")
        return None

    # Registration

    async def send_registration_otp(self, name: str, email: str, password: str) -> OTPResult:
        problem = self._check_email(email)
        if problem:
            return problem
        if not name or not password:
            return _invalid("Name and password are required")
        response = await self.api_client.post(
            endpoints.REGISTER, {"name": name, "email": email, "password": password}
        )
        if not response.success:
            return OTPResult(False, response.message, kind=response.kind)
        self._challenge = OTPChallenge(
            email=email,
            purpose=OTPPurpose.REGISTRATION,
            step=OTPStep.CODE_SENT,
            name=name,
            password=password,
        )
        logger.info("otp_registration_code_sent")
        return OTPResult(True, response.message or "Verification code sent", data=response.data)

    async def verify_registration_otp(self, email: str, code: str) -> OTPResult:
        problem = self._check_email(email) or self._check_code(code)
        if problem:
            return problem
        self._note_order(OTPPurpose.REGISTRATION, email, OTPStep.CODE_SENT)
        response = await self.api_client.post(
            endpoints.VERIFY_REGISTRATION_OTP, {"email": email, "code": code}
        )
        if not response.success:
            return OTPResult(False, response.message, kind=response.kind)
        challenge = self._challenge
        if challenge and challenge.purpose == OTPPurpose.REGISTRATION and challenge.email == email:
            challenge.step = OTPStep.VERIFIED
            challenge.code = code
        else:
            self._challenge = OTPChallenge(
                email=email, purpose=OTPPurpose.REGISTRATION, step=OTPStep.VERIFIED, code=code
            )
        logger.info("otp_registration_verified")
        return OTPResult(True, response.message or "Email verified successfully", data=response.data)

    async def complete_registration(self, email: str, name: str, password: str) -> OTPResult:
        """Final step; returns the issued tokens in ``data`` without storing them.

        Persisting the pair belongs to the session manager, which does it in
        the same transition that moves the session to Authenticated.
        """
        problem = self._check_email(email)
        if problem:
            return problem
        self._note_order(OTPPurpose.REGISTRATION, email, OTPStep.VERIFIED)
        response = await self.api_client.post(
            endpoints.COMPLETE_REGISTRATION,
            {"email": email, "name": name, "password": password},
        )
        if not response.success:
            return OTPResult(False, response.message, kind=response.kind)
        data = response.data
        if not isinstance(data, dict) or not data.get("access_token"):
            logger.error("otp_registration_response_missing_tokens")
            return OTPResult(False, "Malformed response from server", kind=ErrorKind.SERVER)
        user = None
        if isinstance(data.get("user"), dict):
            try:
                user = UserProfile.from_backend(data["user"])
            except ValueError as exc:
                logger.warning("otp_registration_user_invalid", error=str(exc))
        self._challenge = None
        logger.info("otp_registration_completed", user_id=user.id if user else None)
        return OTPResult(
            True,
            response.message or "Registration completed successfully!",
            user=user,
            data=data,
        )

    # Password reset

    async def send_password_reset_otp(self, email: str) -> OTPResult:
        problem = self._check_email(email)
        if problem:
            return problem
        response = await self.api_client.post(endpoints.FORGOT_PASSWORD, {"email": email})
        if not response.success:
            return OTPResult(False, response.message, kind=response.kind)
        self._challenge = OTPChallenge(
            email=email, purpose=OTPPurpose.PASSWORD_RESET, step=OTPStep.CODE_SENT
        )
        return OTPResult(True, response.message or "Reset code sent", data=response.data)

    async def verify_password_reset_otp(self, email: str, code: str) -> OTPResult:
        problem = self._check_email(email) or self._check_code(code)
        if problem:
            return problem
        self._note_order(OTPPurpose.PASSWORD_RESET, email, OTPStep.CODE_SENT)
        response = await self.api_client.post(
            endpoints.VERIFY_PASSWORD_RESET_OTP, {"email": email, "code": code}
        )
        if not response.success:
            return OTPResult(False, response.message, kind=response.kind)
        # The verified code doubles as the reset token
        self._challenge = OTPChallenge(
            email=email, purpose=OTPPurpose.PASSWORD_RESET, step=OTPStep.VERIFIED, code=code
        )
        return OTPResult(True, response.message or "Code verified", data=response.data)

    async def reset_password(self, email: str, reset_token: str, new_password: str) -> OTPResult:
        problem = self._check_email(email)
        if problem:
            return problem
        if not reset_token or not new_password:
            return _invalid("Reset code and new password are required")
        self._note_order(OTPPurpose.PASSWORD_RESET, email, OTPStep.VERIFIED)
        response = await self.api_client.post(
            endpoints.RESET_PASSWORD,
            {"email": email, "reset_token": reset_token, "new_password": new_password},
        )
        if not response.success:
            return OTPResult(False, response.message, kind=response.kind)
        self._challenge = None
        logger.info("otp_password_reset_completed")
        return OTPResult(True, response.message or "Password reset successfully", data=response.data)

    async def resend_otp(self, email: str, purpose: OTPPurpose | str) -> OTPResult:
        """Ask for a fresh code; the challenge keeps its current step."""
        problem = self._check_email(email)
        if problem:
            return problem
        try:
            purpose = OTPPurpose(purpose)
        except ValueError:
            return _invalid(f"Unknown OTP type: {purpose}")
        response = await self.api_client.post(
            endpoints.RESEND_OTP, {"email": email, "otp_type": purpose.value}
        )
        if not response.success:
            return OTPResult(False, response.message, kind=response.kind)
        return OTPResult(True, response.message or "Verification code sent again!", data=response.data)
