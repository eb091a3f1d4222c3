from __future__ import annotations

from typing import Optional

from fastapi import FastAPI

from gonews.api.error_handling import register_exception_handlers
from gonews.api.routes import router
from gonews.backend.accounts import AccountService
from gonews.backend.email import EmailService
from gonews.backend.otp import OTPService
from gonews.backend.store import MemoryUserStore
from gonews.config import Settings
from gonews.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the reference auth backend the session client talks to."""
    settings = settings or Settings.from_env()
    store = MemoryUserStore(settings.backend_state_path)
    email = EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
        keep_outbox=settings.test_mode,
    )
    otp = OTPService(store, email, settings)

    application = FastAPI(title="GoNews Auth", version=__version__)
    application.state.settings = settings
    application.state.store = store
    application.state.email = email
    application.state.otp = otp
    application.state.accounts = AccountService(store, otp, email, settings)

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag log lines with the caller's X-Request-ID, or a fresh one."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(application)
    application.include_router(router)
    logger.info(
        "auth_backend_created",
        persistent=bool(settings.backend_state_path),
        smtp_configured=email.is_configured,
    )
    return application


app = create_app()
