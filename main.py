#!/usr/bin/env python3
"""
SessionGate -- command-line administration and flow testing.

Usage:
  python main.py create-user --email a@x.com --password secret --name "Ada"
  python main.py purge-sessions
  python main.py serve --port 8000
  python main.py signin --url http://localhost:8000 --email a@x.com --password secret --signout

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.
  DATABASE_URL  SQLAlchemy URL of the auth database.
"""

import argparse
import asyncio
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import SessionStore, UserStore, create_auth_engine
from auth.tokens import hash_password
from client.flow import AuthClient, HttpNavigator
from core.config import get_settings
from core.results import parse_auth_result


def _create_user(email: str, password: Optional[str], name: Optional[str]) -> int:
    if password is None:
        password = getpass.getpass("Password: ")
    if not email or not password:
        print("  [!] Email and password are required.")
        return 1

    engine = create_auth_engine(get_settings().database_url)
    try:
        store = UserStore(engine)
        user_id = store.create_user(User(email=email, name=name, hashed_password=hash_password(password)))
    except IntegrityError:
        print(f"  [!] A user with email '{email}' already exists.")
        return 1
    finally:
        engine.dispose()
    print(f"  Created user {user_id} ({email.strip().lower()}).")
    return 0


def _purge_sessions() -> int:
    engine = create_auth_engine(get_settings().database_url)
    try:
        removed = SessionStore(engine).delete_expired()
    finally:
        engine.dispose()
    print(f"  Removed {removed} expired session(s).")
    return 0


def _serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=reload)
    return 0


async def _check_flow(
    url: str, email: str, password: Optional[str], callback_url: str, timeout: float, signout: bool
) -> int:
    """Sign in with the client helper, show the resolved session, optionally sign out again."""
    if password is None:
        password = getpass.getpass("Password: ")
    async with AuthClient(url, timeout=timeout, base_path=get_settings().auth_base_path) as auth:
        resp = await auth.sign_in(
            "credentials",
            {"email": email, "password": password, "callback_url": callback_url, "redirect": False},
        )
        result = parse_auth_result(resp.json())
        if result.kind == "error":
            print(f"  [!] Sign-in failed: {result.error} -- {result.message}")
            return 1
        session = await auth.get_session()
        if session is None:
            print("  [!] Sign-in reported success but no session was resolved.")
            return 1
        user = session["user"]
        print(f"  Signed in as {user['email']} (id {user['id']}), session expires {session['expires']}.")

        if signout:
            await auth.sign_out({"callback_url": callback_url})
            if isinstance(auth.navigator, HttpNavigator):
                print(f"  Signed out; landed on {auth.navigator.location}.")
            if await auth.get_session() is not None:
                print("  [!] Session still resolves after sign-out.")
                return 1
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sessiongate",
        description="Session-based authentication service: administration and flow checks.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --email a@x.com --name "Ada"
  python main.py serve --reload
  python main.py signin --url http://localhost:8000 --email a@x.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_create = sub.add_parser("create-user", help="Register a user who signs in with email and password")
    p_create.add_argument("--email", required=True, help="Login email (stored lowercased, must be unique)")
    p_create.add_argument("--password", help="Password (prompted for when omitted)")
    p_create.add_argument("--name", help="Display name")

    sub.add_parser("purge-sessions", help="Delete expired sessions from the database")

    p_serve = sub.add_parser("serve", help="Run the API server with uvicorn")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true", help="Restart on code changes (development)")

    p_signin = sub.add_parser("signin", help="Sign in against a running server and show the session")
    p_signin.add_argument("--url", required=True, metavar="BASE_URL", help="Server origin, e.g. http://localhost:8000")
    p_signin.add_argument("--email", required=True)
    p_signin.add_argument("--password", help="Password (prompted for when omitted)")
    p_signin.add_argument("--callback-url", default="/", help="Post sign-in destination (default: /)")
    p_signin.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout in seconds")
    p_signin.add_argument("--signout", action="store_true", help="Sign out again and confirm the session is gone")

    args = parser.parse_args()

    if args.command == "create-user":
        code = _create_user(args.email, args.password, args.name)
    elif args.command == "purge-sessions":
        code = _purge_sessions()
    elif args.command == "serve":
        code = _serve(args.host, args.port, args.reload)
    elif args.command == "signin":
        code = asyncio.run(
            _check_flow(args.url, args.email, args.password, args.callback_url, args.timeout, args.signout)
        )
    else:
        parser.print_help()
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
