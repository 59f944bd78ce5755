#!/usr/bin/env python3
"""
CredKeep -- admin command line for the credential and session store.

Usage:
  python main.py init-db
  python main.py hash-password
  python main.py verify-token <token>
  python main.py verify-token <token> --refresh
  python main.py logout-all <user-id>

Configuration is read from the environment / .env exactly as the API reads it
(DATABASE_URL, JWT_ACCESS_SECRET, JWT_REFRESH_SECRET, BCRYPT_ROUNDS, ...).
"""

import argparse
import getpass
import sys
from datetime import timedelta
from typing import Optional

from auth.errors import AuthError, TokenExpired
from auth.models import AuthFailure, TokenKind
from auth.orchestrator import build_orchestrator
from auth.passwords import PasswordHasher
from auth.store import SqlSessionStore, SqlUserStore, create_store_engine
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings


def _init_db(settings: Settings) -> int:
    """Create the users and sessions tables if they do not exist."""
    engine = create_store_engine(settings.database_url, settings.database_busy_timeout)
    SqlUserStore(engine)
    SqlSessionStore(engine)
    engine.dispose()
    print(f"  Schema ready at {engine.url.render_as_string(hide_password=True)}")
    return 0


def _hash_password(settings: Settings, password: Optional[str] = None) -> int:
    """Prompt for a password (twice) and print its bcrypt hash."""
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Repeat:   "):
            print("  [!] Passwords do not match.", file=sys.stderr)
            return 1
    try:
        print(PasswordHasher(rounds=settings.bcrypt_rounds).hash(password))
    except AuthError as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        return 1
    return 0


def _verify_token(settings: Settings, token: str, refresh: bool = False) -> int:
    """Print the claims of a token, or the reason it fails verification."""
    issuer = TokenIssuer(
        settings.jwt_access_secret,
        settings.jwt_refresh_secret,
        access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
        refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
    )
    kind = TokenKind.REFRESH if refresh else TokenKind.ACCESS
    try:
        claims = issuer.verify(token, kind)
    except TokenExpired:
        print("  expired")
        return 2
    except AuthError as exc:
        print(f"  invalid ({getattr(exc, 'reason', exc.code)})")
        return 1
    print(f"  kind:    {claims.kind.value}")
    print(f"  subject: {claims.subject_id}")
    print(f"  email:   {claims.email}")
    print(f"  issued:  {claims.issued_at.isoformat()}")
    print(f"  expires: {claims.expires_at.isoformat()}")
    return 0


def _logout_all(settings: Settings, user_id: str) -> int:
    """Revoke every live session of a user (e.g. after a suspected compromise)."""
    engine = create_store_engine(settings.database_url, settings.database_busy_timeout)
    orchestrator = build_orchestrator(settings, SqlUserStore(engine), SqlSessionStore(engine))
    result = orchestrator.logout_all(user_id)
    engine.dispose()
    if isinstance(result, AuthFailure):
        print(f"  [!] {result.message}", file=sys.stderr)
        return 1
    print(f"  All sessions revoked for {user_id}.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="credkeep",
        description="Admin utilities for the CredKeep credential store.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("init-db", help="Create the database schema")
    sub.add_parser("hash-password", help="Prompt for a password and print its bcrypt hash")

    verify = sub.add_parser("verify-token", help="Decode and verify a token")
    verify.add_argument("token", help="The encoded token")
    verify.add_argument("--refresh", action="store_true", help="Verify as a refresh token (default: access)")

    logout_all = sub.add_parser("logout-all", help="Revoke every session of a user")
    logout_all.add_argument("user_id", metavar="USER-ID")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    if args.command == "init-db":
        return _init_db(settings)
    elif args.command == "hash-password":
        return _hash_password(settings)
    elif args.command == "verify-token":
        return _verify_token(settings, args.token, refresh=args.refresh)
    else:
        return _logout_all(settings, args.user_id)


if __name__ == "__main__":
    sys.exit(main())
