"""
auth/contracts.py -- Storage contracts consumed by the credential core.

The orchestrator and identity resolver depend only on these two interfaces.
Any relational, document, or in-memory engine implementing them is
substitutable; auth/store.py provides the SQLAlchemy implementation.

Implementations must be safe for concurrent use from many request threads,
must raise auth.errors.StorageUnavailable for infrastructure faults, and must
never log refresh tokens or password hashes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from auth.models import Session, User


class UserStore(ABC):
    """Durable identity records."""

    @abstractmethod
    def find_by_id(self, user_id: str) -> User | None:
        """Return the user with this id, or None."""

    @abstractmethod
    def find_by_email(self, email: str) -> User | None:
        """Return the user with this email (case-insensitive), or None."""

    @abstractmethod
    def find_by_oauth_identity(self, provider: str, provider_id: str) -> User | None:
        """Return the user linked to (provider, provider_id), or None."""

    @abstractmethod
    def create(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps set.

        Raises AccountAlreadyExists if the email, or the OAuth identity, is
        already taken -- including when a concurrent create won the race.
        """

    @abstractmethod
    def update(self, user_id: str, **fields) -> User | None:
        """Apply a partial update and return the fresh record.

        Returns None when user_id does not exist.
        """


class SessionStore(ABC):
    """Durable record of outstanding refresh-token sessions."""

    @abstractmethod
    def create(self, user_id: str, refresh_token: str, expires_at: datetime) -> Session:
        """Insert a new session.

        Raises ValueError if expires_at is not in the future or the refresh
        token is already bound to another session.
        """

    @abstractmethod
    def find_valid(self, refresh_token: str) -> Session | None:
        """Return the session for this token if it is not revoked and not expired."""

    @abstractmethod
    def revoke(self, user_id: str, refresh_token: str) -> None:
        """Mark the matching session revoked. Idempotent; unknown tokens are not an error."""

    @abstractmethod
    def rotate(
        self,
        user_id: str,
        old_refresh_token: str,
        new_refresh_token: str,
        expires_at: datetime,
    ) -> Session | None:
        """Atomically revoke the old session and create its replacement.

        Both writes happen in one transaction, and the revoke is conditional
        on the old session still being valid. Returns the new session, or None
        if the old one was already revoked, expired, unknown, or owned by a
        different user. Of two concurrent calls for the same old token, at most
        one returns a session.
        """

    @abstractmethod
    def revoke_all(self, user_id: str) -> int:
        """Revoke every live session of a user. Returns how many were revoked."""
