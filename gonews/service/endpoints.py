from __future__ import annotations

# Paths are relative to Settings.full_base_url
REGISTER = "/auth/register"
VERIFY_REGISTRATION_OTP = "/auth/verify-registration-otp"
COMPLETE_REGISTRATION = "/auth/complete-registration"
LOGIN = "/auth/login"
LOGOUT = "/auth/logout"
REFRESH = "/auth/refresh"
FORGOT_PASSWORD = "/auth/forgot-password"
VERIFY_PASSWORD_RESET_OTP = "/auth/verify-password-reset-otp"
RESET_PASSWORD = "/auth/reset-password"
RESEND_OTP = "/auth/resend-otp"
ME = "/auth/me"
CHANGE_PASSWORD = "/auth/change-password"
CHECK_PASSWORD = "/auth/check-password"

# Requests to these never carry a bearer token and never trigger refresh-and-retry
PUBLIC_ENDPOINTS = frozenset(
    {
        REGISTER,
        VERIFY_REGISTRATION_OTP,
        COMPLETE_REGISTRATION,
        LOGIN,
        REFRESH,
        FORGOT_PASSWORD,
        VERIFY_PASSWORD_RESET_OTP,
        RESET_PASSWORD,
        RESEND_OTP,
        CHECK_PASSWORD,
    }
)


def is_public(path: str) -> bool:
    return path.split("?", 1)[0].rstrip("/") in PUBLIC_ENDPOINTS
