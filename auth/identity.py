"""
auth/identity.py -- Map an incoming credential to exactly one canonical User.

Three entry points, one per credential kind:

  register_password()  -- rejects any existing email, whatever its auth method.
                          Registration never silently links; the caller must
                          log in or use OAuth instead.

  login_password()     -- email lookup + bcrypt verify. Unknown email,
                          OAuth-only account, wrong password and inactive
                          account all produce the same InvalidCredentials
                          rejection, and all cost one bcrypt verification
                          (a dummy hash stands in when there is nothing to
                          compare against) so timing does not reveal which.

  resolve_oauth()      -- (provider, provider_id) first, then email. An email
                          match is linked: provider identity attached and
                          email_verified upgraded. No match creates a new
                          OAuth-only user.

Results are Authenticated(user) or Rejected(error). StorageUnavailable and
PasswordHashingError propagate as exceptions.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

from auth.contracts import UserStore
from auth.errors import AccountAlreadyExists, InvalidCredentials, MissingOAuthEmail
from auth.models import Authenticated, OAuthProfile, Rejected, Resolution, User, normalize_email
from auth.passwords import PasswordHasher

logger = logging.getLogger("credkeep.auth")


class IdentityResolver:
    def __init__(self, users: UserStore, hasher: PasswordHasher) -> None:
        self.users = users
        self.hasher = hasher

    # ------------------------------------------------------------------
    # Password registration
    # ------------------------------------------------------------------

    def register_password(self, email: str, password: str, first_name: str = "", last_name: str = "") -> Resolution:
        """Create a password account, or reject if the email is taken.

        The pre-check gives the common case a fast answer; the store's UNIQUE
        constraint catches the race where two registrations pass the check
        together, and that also surfaces as AccountAlreadyExists.
        """
        email = normalize_email(email)
        if self.users.find_by_email(email) is not None:
            return Rejected(AccountAlreadyExists())

        password_hash = self.hasher.hash(password)
        try:
            user = self.users.create(
                User(
                    email=email,
                    password_hash=password_hash,
                    first_name=first_name,
                    last_name=last_name,
                )
            )
        except AccountAlreadyExists as exc:
            return Rejected(exc)
        logger.info("Registered user %s", user.id)
        return Authenticated(user)

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    def login_password(self, email: str, password: str) -> Resolution:
        user = self.users.find_by_email(normalize_email(email))
        if user is None or user.password_hash is None:
            self.hasher.verify_dummy(password)
            return Rejected(InvalidCredentials())
        if not self.hasher.verify(password, user.password_hash):
            return Rejected(InvalidCredentials())
        if not user.is_active:
            return Rejected(InvalidCredentials("Account is inactive."))

        if self.hasher.needs_rehash(user.password_hash):
            upgraded = self.users.update(user.id, password_hash=self.hasher.hash(password))
            if upgraded is not None:
                logger.info("Upgraded password hash cost for user %s", user.id)
                user = upgraded
        return Authenticated(user)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def resolve_oauth(self, profile: OAuthProfile) -> Resolution:
        """Find, link, or create the user behind an OAuth profile."""
        user = self.users.find_by_oauth_identity(profile.provider, profile.provider_id)
        if user is not None:
            return self._active(user)

        if not profile.email or not profile.email.strip():
            return Rejected(MissingOAuthEmail())
        email = normalize_email(profile.email)

        existing = self.users.find_by_email(email)
        if existing is not None:
            return self._link(existing, profile)

        try:
            user = self.users.create(
                User(
                    email=email,
                    oauth_provider=profile.provider,
                    oauth_id=profile.provider_id,
                    first_name=profile.given_name,
                    last_name=profile.family_name,
                    email_verified=profile.email_verified,
                )
            )
        except AccountAlreadyExists:
            # A concurrent first login for the same person won the insert.
            # Resolve to whichever record now holds the identity or the email.
            winner = self.users.find_by_oauth_identity(
                profile.provider, profile.provider_id
            ) or self.users.find_by_email(email)
            if winner is None:
                raise
            if winner.oauth_provider == profile.provider and winner.oauth_id == profile.provider_id:
                return self._active(winner)
            return self._link(winner, profile)

        logger.info("Created OAuth user %s via %s", user.id, profile.provider)
        return Authenticated(user)

    def _link(self, user: User, profile: OAuthProfile) -> Resolution:
        """Attach the provider identity to an existing user found by email.

        A user holds one provider identity at a time; linking a second
        provider replaces the first. The password hash, if any, is kept.
        """
        linked = self.users.update(
            user.id,
            oauth_provider=profile.provider,
            oauth_id=profile.provider_id,
            email_verified=True,
        )
        if linked is None:
            # Deleted between lookup and update by an administrative action.
            return Rejected(InvalidCredentials("Account disappeared during linking."))
        logger.info("Linked %s identity to user %s", profile.provider, linked.id)
        return self._active(linked)

    @staticmethod
    def _active(user: User) -> Resolution:
        if not user.is_active:
            return Rejected(InvalidCredentials("Account is inactive."))
        return Authenticated(user)
