"""
auth/tokens.py -- Access and refresh token issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Claims are sub (user id), email, iat, exp.
       Refresh tokens add type="refresh" and a random jti; access tokens carry
       no type claim. The jti keeps two refresh tokens minted for the same
       user in the same second distinct, which the session store's UNIQUE
       refresh_token column relies on.

  Separate secrets: access tokens are signed with JWT_ACCESS_SECRET, refresh
       tokens with JWT_REFRESH_SECRET. Leaking one secret does not let an
       attacker forge the other token class.

  Wrong type: the unverified type claim is checked before the signature so a
       refresh token presented as an access token (or vice versa) fails with
       reason "wrong_type" rather than a confusing signature failure.

  Expiry: checked against the injected clock, not by python-jose, so callers
       and tests share one notion of "now". TokenExpired means "retry via
       refresh"; TokenInvalid means "force re-login".

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid
from auth.models import TokenClaims, TokenKind, User

logger = logging.getLogger("credkeep.auth")

ALGORITHM = "HS256"
_MIN_SECRET_LENGTH = 32

DEFAULT_ACCESS_TTL = timedelta(seconds=900)
DEFAULT_REFRESH_TTL = timedelta(days=7)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Signs and verifies access and refresh tokens.

    Usage:
        issuer = TokenIssuer(access_secret, refresh_secret)
        token = issuer.issue_access_token(user)
        claims = issuer.verify(token, TokenKind.ACCESS)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = DEFAULT_ACCESS_TTL,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if len(access_secret) < _MIN_SECRET_LENGTH or len(refresh_secret) < _MIN_SECRET_LENGTH:
            raise ValueError("Token secrets must be at least 32 characters.")
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh secrets must be different.")
        self._secrets = {TokenKind.ACCESS: access_secret, TokenKind.REFRESH: refresh_secret}
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @property
    def access_expires_in(self) -> int:
        """Access token lifetime in whole seconds, as reported to clients."""
        return int(self.access_ttl.total_seconds())

    def refresh_expires_at(self, issued_at: datetime | None = None) -> datetime:
        return (issued_at or self._clock()) + self.refresh_ttl

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User) -> str:
        return self._encode(user, TokenKind.ACCESS, self.access_ttl)

    def issue_refresh_token(self, user: User) -> str:
        return self._encode(user, TokenKind.REFRESH, self.refresh_ttl)

    def _encode(self, user: User, kind: TokenKind, ttl: timedelta) -> str:
        if user.id is None:
            raise ValueError("Cannot issue a token for a user without an id.")
        now = self._clock()
        payload: dict = {
            "sub": user.id,
            "email": user.email,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        if kind is TokenKind.REFRESH:
            payload["type"] = TokenKind.REFRESH.value
            payload["jti"] = secrets.token_urlsafe(16)
        return jwt.encode(payload, self._secrets[kind], algorithm=ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, kind: TokenKind) -> TokenClaims:
        """Verify a token of the expected kind and return its claims.

        Raises:
            TokenInvalid: malformed, bad signature, or wrong token type.
            TokenExpired: well-formed and correctly signed, but past exp.
        """
        if not token or not isinstance(token, str):
            raise TokenInvalid("malformed")

        try:
            unverified = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenInvalid("malformed") from exc

        if _kind_of(unverified) is not kind:
            raise TokenInvalid("wrong_type")

        try:
            payload = jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except JWTError as exc:
            raise TokenInvalid("signature") from exc

        claims = _claims_from_payload(payload, kind)
        if claims.expires_at <= self._clock():
            raise TokenExpired()
        return claims


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _kind_of(payload: dict) -> TokenKind | None:
    token_type = payload.get("type")
    if token_type is None:
        return TokenKind.ACCESS
    if token_type == TokenKind.REFRESH.value:
        return TokenKind.REFRESH
    return None


def _claims_from_payload(payload: dict, kind: TokenKind) -> TokenClaims:
    sub = payload.get("sub")
    email = payload.get("email")
    iat = payload.get("iat")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub or not isinstance(email, str):
        raise TokenInvalid("malformed")
    if not isinstance(iat, (int, float)) or not isinstance(exp, (int, float)):
        raise TokenInvalid("malformed")
    return TokenClaims(
        subject_id=sub,
        email=email,
        kind=kind,
        issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
    )
