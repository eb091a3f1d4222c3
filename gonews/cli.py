"""Command line access to the GoNews session client.

Usage:
    python -m gonews.cli login --email demo@gonews.com
    python -m gonews.cli status
    python -m gonews.cli register --name "Ada" --email a@b.com
    python -m gonews.cli verify --email a@b.com --code 123456
    python -m gonews.cli complete --name "Ada" --email a@b.com
    python -m gonews.cli forgot --email a@b.com
    python -m gonews.cli reset --email a@b.com --code 123456
    python -m gonews.cli logout

Passwords are read from --password, then GONEWS_PASSWORD, then a prompt.
Every command prints one JSON object and exits non-zero on failure.
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import os
import sys
from typing import Any, Optional

from gonews.service.runtime import get_runtime
from gonews.service.session import Authenticated


def _password(args: argparse.Namespace, prompt: str = "Password: ") -> str:
    if getattr(args, "password", None):
        return args.password
    from_env = os.environ.get("GONEWS_PASSWORD")
    if from_env:
        return from_env
    return getpass.getpass(prompt)


def _result_payload(result: Any) -> dict:
    payload: dict[str, Any] = {
        "success": result.success,
        "message": result.message,
    }
    if result.kind is not None:
        payload["kind"] = result.kind.value
    if result.user is not None:
        payload["user"] = result.user.to_dict()
    return payload


def _state_payload(state: Any) -> dict:
    payload: dict[str, Any] = {"status": state.status.value}
    if isinstance(state, Authenticated):
        payload["user"] = state.user.to_dict()
    message = getattr(state, "message", None)
    if message:
        payload["message"] = message
    return payload


async def _run(args: argparse.Namespace) -> dict:
    runtime = get_runtime()
    session = runtime.session
    otp = runtime.otp
    try:
        if args.command == "status":
            state = await session.start()
            return {"success": True, **_state_payload(state)}
        if args.command == "login":
            result = await session.login(
                args.email,
                _password(args),
                remember_me=args.remember_me or runtime.settings.remember_me_default,
            )
        elif args.command == "logout":
            await session.start()
            result = await session.logout()
        elif args.command == "register":
            result = await session.register(args.name, args.email, _password(args))
        elif args.command == "verify":
            result = await session.verify_registration_otp(args.email, args.code)
        elif args.command == "complete":
            result = await session.complete_registration(
                args.email, args.name, _password(args)
            )
        elif args.command == "forgot":
            result = await otp.send_password_reset_otp(args.email)
        elif args.command == "reset":
            verified = await otp.verify_password_reset_otp(args.email, args.code)
            if not verified.success:
                return _result_payload(verified)
            result = await otp.reset_password(
                args.email, args.code, _password(args, "New password: ")
            )
        else:
            raise ValueError(f"unknown command {args.command}")
        payload = _result_payload(result)
        payload["state"] = session.state.status.value
        return payload
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gonews",
        description="GoNews session client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in with email and password")
    login.add_argument("--email", required=True)
    login.add_argument("--password")
    login.add_argument("--remember-me", action="store_true")

    sub.add_parser("logout", help="Sign out and clear the stored session")
    sub.add_parser("status", help="Restore the stored session and show its state")

    register = sub.add_parser("register", help="Start registration; emails a code")
    register.add_argument("--name", required=True)
    register.add_argument("--email", required=True)
    register.add_argument("--password")

    verify = sub.add_parser("verify", help="Verify the registration code")
    verify.add_argument("--email", required=True)
    verify.add_argument("--code", required=True)

    complete = sub.add_parser("complete", help="Finish registration and sign in")
    complete.add_argument("--name", required=True)
    complete.add_argument("--email", required=True)
    complete.add_argument("--password")

    forgot = sub.add_parser("forgot", help="Email a password reset code")
    forgot.add_argument("--email", required=True)

    reset = sub.add_parser("reset", help="Verify the reset code and set a new password")
    reset.add_argument("--email", required=True)
    reset.add_argument("--code", required=True)
    reset.add_argument("--password", help="New password")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    payload = asyncio.run(_run(args))
    print(json.dumps(payload, indent=2, default=str))
    return 0 if payload.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
