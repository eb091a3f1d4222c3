from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from gonews.api.schemas import (
    CompleteRegistrationRequest,
    ForgotPasswordRequest,
    LoginRequest,
    PasswordChangeRequest,
    PasswordCheckRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    ResendOTPRequest,
    ResetPasswordRequest,
    SuccessEnvelope,
    VerifyOTPRequest,
)
from gonews.backend.accounts import AccountService, AuthContext
from gonews.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        payload["details"] = details
    return HTTPException(status_code=status_code, detail=payload)


def _ok(message: str, data: Any = None) -> SuccessEnvelope:
    return SuccessEnvelope(message=message, data=data)


def get_accounts(request: Request) -> AccountService:
    accounts = getattr(request.app.state, "accounts", None)
    if accounts is None:
        raise _http_error("server_error", "account service not configured", status_code=500)
    return accounts


async def get_current_user(
    authorization: Optional[str] = Header(None),
    accounts: AccountService = Depends(get_accounts),
) -> AuthContext:
    if not authorization:
        raise _http_error("unauthorized", "User authentication required", status_code=401)
    return accounts.authenticate(authorization)


@router.get("/healthz", tags=["health"])
async def health():
    return {"status": "ok"}


# Registration


@router.post("/auth/register", response_model=SuccessEnvelope, tags=["auth"])
async def register(body: RegisterRequest, accounts: AccountService = Depends(get_accounts)):
    """Start registration by emailing a one-time code.

    Raises:
        409: If the email is already registered
        429: If too many codes were requested for this email
    """
    accounts.register(body.name, body.email, body.password)
    return _ok(
        "OTP sent to your email address. Please verify to complete registration.",
        {"email": body.email, "otp_expires_in_minutes": accounts.settings.otp_expiry_minutes},
    )


@router.post("/auth/verify-registration-otp", response_model=SuccessEnvelope, tags=["auth"])
async def verify_registration_otp(
    body: VerifyOTPRequest, accounts: AccountService = Depends(get_accounts)
):
    accounts.verify_registration(body.email, body.code)
    return _ok("OTP verified successfully", {"email": body.email, "verified": True})


@router.post("/auth/complete-registration", response_model=SuccessEnvelope, tags=["auth"])
async def complete_registration(
    body: CompleteRegistrationRequest, accounts: AccountService = Depends(get_accounts)
):
    """Create the account once its registration code has been verified.

    Raises:
        400: If the code was not verified first
    """
    tokens = accounts.complete_registration(body.email, body.name, body.password)
    return _ok("Registration completed successfully", tokens)


@router.post("/auth/resend-otp", response_model=SuccessEnvelope, tags=["auth"])
async def resend_otp(body: ResendOTPRequest, accounts: AccountService = Depends(get_accounts)):
    accounts.resend_otp(body.email, body.otp_type)
    return _ok("OTP resent successfully", {"email": body.email, "otp_type": body.otp_type})


# Sessions


@router.post("/auth/login", response_model=SuccessEnvelope, tags=["auth"])
async def login(body: LoginRequest, accounts: AccountService = Depends(get_accounts)):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated or unverified
    """
    tokens = accounts.login(body.email, body.password, remember_me=body.remember_me)
    return _ok("Login successful", tokens)


@router.post("/auth/refresh", response_model=SuccessEnvelope, tags=["auth"])
async def refresh(body: RefreshRequest, accounts: AccountService = Depends(get_accounts)):
    tokens = accounts.refresh(body.refresh_token)
    return _ok("Token refreshed successfully", tokens)


@router.post("/auth/logout", response_model=SuccessEnvelope, tags=["auth"])
async def logout(
    principal: AuthContext = Depends(get_current_user),
    accounts: AccountService = Depends(get_accounts),
):
    accounts.logout(principal)
    return _ok("Logout successful")


# Profile


@router.get("/auth/me", response_model=SuccessEnvelope, tags=["profile"])
async def get_me(
    principal: AuthContext = Depends(get_current_user),
    accounts: AccountService = Depends(get_accounts),
):
    user = accounts.get_profile(principal.user.id)
    return _ok("Profile retrieved successfully", user.public())


@router.put("/auth/me", response_model=SuccessEnvelope, tags=["profile"])
async def update_me(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(get_current_user),
    accounts: AccountService = Depends(get_accounts),
):
    user = accounts.update_profile(principal.user.id, body.model_dump(exclude_none=True))
    return _ok("Profile updated successfully", user.public())


@router.post("/auth/change-password", response_model=SuccessEnvelope, tags=["profile"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_current_user),
    accounts: AccountService = Depends(get_accounts),
):
    """Change the password of the signed-in user.

    Raises:
        401: If the current password is wrong
    """
    if body.current_password == body.new_password:
        raise _http_error(
            "validation_error",
            "New password must be different from the current password",
            status_code=400,
        )
    accounts.change_password(principal, body.current_password, body.new_password)
    return _ok("Password changed successfully")


# Password reset


@router.post("/auth/forgot-password", response_model=SuccessEnvelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest, accounts: AccountService = Depends(get_accounts)
):
    # Same response whether or not the email is registered
    accounts.forgot_password(body.email)
    return _ok(
        "If an account exists for this email, a password reset code has been sent",
        {"email": body.email},
    )


@router.post("/auth/verify-password-reset-otp", response_model=SuccessEnvelope, tags=["auth"])
async def verify_password_reset_otp(
    body: VerifyOTPRequest, accounts: AccountService = Depends(get_accounts)
):
    accounts.verify_password_reset(body.email, body.code)
    return _ok(
        "OTP verified successfully",
        {"email": body.email, "verified": True, "reset_token": body.code},
    )


@router.post("/auth/reset-password", response_model=SuccessEnvelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, accounts: AccountService = Depends(get_accounts)
):
    accounts.reset_password(body.email, body.reset_token, body.new_password)
    return _ok("Password reset successfully. Please login with your new password.")


@router.post("/auth/check-password", response_model=SuccessEnvelope, tags=["auth"])
async def check_password(
    body: PasswordCheckRequest, accounts: AccountService = Depends(get_accounts)
):
    """Score a candidate password for the sign-up and reset forms.

    Always 200; ``data.valid`` says whether the password would be accepted.
    """
    return _ok("Password strength evaluated", accounts.evaluate_password(body.password))
