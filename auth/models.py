"""
auth/models.py -- Domain dataclasses for credential and session entities.

Pattern: Data class (pure data container, close to zero logic). Stores and the
orchestrator do the work; these classes only own the domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from auth.errors import AuthError


def normalize_email(email: str) -> str:
    """Canonical form used for storage, lookup and uniqueness."""
    return email.strip().lower()


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class User:
    """Canonical identity record.

    email is stored normalized (stripped, lowercased) and is unique across
    every authentication method: a password account and a later OAuth login
    with the same email are one User.

    password_hash is None for OAuth-only accounts. oauth_provider / oauth_id
    are either both set or both None.
    """

    email: str
    id: str | None = None
    password_hash: str | None = None  # None = OAuth-only user
    oauth_provider: str | None = None  # "google", "github", "oidc"
    oauth_id: str | None = None  # provider's stable user ID
    first_name: str = ""
    last_name: str = ""
    email_verified: bool = False
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None

    @property
    def has_oauth_identity(self) -> bool:
        return self.oauth_provider is not None and self.oauth_id is not None


@dataclass
class Session:
    """One outstanding refresh-token grant.

    refresh_token is a bearer secret: it is never logged and never appears in
    repr() output. revoked only ever moves from False to True.
    """

    user_id: str
    refresh_token: str = field(repr=False)
    expires_at: datetime
    id: str | None = None
    created_at: datetime | None = None
    revoked: bool = False

    def is_valid(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass(frozen=True)
class OAuthProfile:
    """Provider-neutral profile produced after the OAuth code exchange."""

    provider: str
    provider_id: str
    email: str | None
    email_verified: bool = False
    given_name: str = ""
    family_name: str = ""


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of an access or refresh token."""

    subject_id: str
    email: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime


# ---------------------------------------------------------------------------
# Tagged results
#
# IdentityResolver returns Authenticated or Rejected; infrastructure faults
# are raised as StorageUnavailable. The orchestrator returns TokenPair or
# AuthFailure and never lets an AuthError cross into the transport layer.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Authenticated:
    user: User


@dataclass(frozen=True)
class Rejected:
    reason: AuthError


Resolution = Union[Authenticated, Rejected]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str = field(repr=False)
    expires_in: int = 900


@dataclass(frozen=True)
class AuthFailure:
    """A typed failure the transport layer renders into a response.

    infrastructure is True when the cause is a storage fault (retry / 503)
    rather than something the caller did.
    """

    error: AuthError

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.public_message

    @property
    def infrastructure(self) -> bool:
        return self.error.infrastructure


@dataclass(frozen=True)
class LogoutResult:
    """Logout always succeeds; it is not an oracle for session existence."""

    success: bool = True
