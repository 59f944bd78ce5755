"""
auth/errors.py -- Error taxonomy for the credential and session core.

Every error carries a stable machine-readable code and a public_message that
is safe to show to the caller. The internal message (str(exc)) may carry more
detail for logs and is never rendered into a response.

Disclosure policy:
  InvalidCredentials never says which check failed (unknown email, OAuth-only
  account, wrong password, inactive account).
  SessionNotFound shares the public code and message of TokenExpired so a
  caller cannot probe the session store.
  AccountAlreadyExists is disclosed: the caller supplied the email.
  StorageUnavailable is an infrastructure fault, not a user error.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error the core raises or returns."""

    code = "auth_error"
    public_message = "Authentication failed."
    infrastructure = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    public_message = "Invalid email or password."


class AccountAlreadyExists(AuthError):
    code = "account_exists"
    public_message = "An account with that email already exists."


class TokenExpired(AuthError):
    code = "token_expired"
    public_message = "Token has expired."


class TokenInvalid(AuthError):
    """Malformed token, bad signature, or wrong token type.

    reason is one of "malformed", "signature", "wrong_type" and is for logs
    only; the public code is the same for all three.
    """

    code = "invalid_token"
    public_message = "Token is invalid."

    def __init__(self, reason: str = "malformed", message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"Token is invalid ({reason}).")


class SessionNotFound(TokenExpired):
    """No valid session matches a correctly signed refresh token.

    Subclasses TokenExpired so callers that retry-or-relogin on expiry treat
    a revoked or replayed refresh token the same way.
    """

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "No valid session for refresh token.")


class MissingOAuthEmail(AuthError):
    code = "oauth_email_missing"
    public_message = "The identity provider did not supply an email address."


class PasswordTooLong(AuthError):
    """The password exceeds what bcrypt reads (72 bytes of UTF-8).

    The caller's input is at fault, so this is not an infrastructure error.
    """

    code = "password_too_long"
    public_message = "Password must be at most 72 bytes when UTF-8 encoded."


class AccountNotFound(AuthError):
    """No user exists for an id the caller holds, e.g. deleted mid-session."""

    code = "account_not_found"
    public_message = "Account not found."


class StorageUnavailable(AuthError):
    code = "storage_unavailable"
    public_message = "The service is temporarily unavailable. Please retry."
    infrastructure = True


class PasswordHashingError(AuthError):
    """Hashing itself failed. Fatal to the calling operation."""

    code = "internal_error"
    public_message = "An unexpected error occurred."
    infrastructure = True
