"""
auth/orchestrator.py -- Top-level flows: login, register, OAuth callback,
refresh, logout, profile update.

Each call is single-shot and keeps no state between calls; durable state lives
only in the injected UserStore and SessionStore. One AuthOrchestrator is built
at process start (see build_orchestrator) and shared by every request.

Boundary policy:
  Every flow returns TokenPair (or LogoutResult / User) on success and
  AuthFailure on failure. AuthError never crosses into the transport layer
  as an exception. StorageUnavailable comes back as an AuthFailure whose
  infrastructure flag is set so the transport can answer 503 instead of 401.

Refresh is the anti-replay mechanism: the presented refresh token's session
is revoked and its replacement created in one atomic store call, so a refresh
token works exactly once. A second presentation, sequential or concurrent,
finds no valid session and fails with SessionNotFound.

Layer rule: may import core/ (build_orchestrator only); never api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from auth.contracts import SessionStore, UserStore
from auth.errors import AccountNotFound, AuthError, SessionNotFound, TokenInvalid
from auth.identity import IdentityResolver
from auth.models import (
    AuthFailure,
    LogoutResult,
    OAuthProfile,
    Rejected,
    TokenKind,
    TokenPair,
    User,
)
from auth.passwords import PasswordHasher
from auth.tokens import TokenIssuer

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("credkeep.auth")


class AuthOrchestrator:
    """Coordinates the resolver, hasher, token issuer and stores per flow.

    Usage:
        orchestrator = AuthOrchestrator(users, sessions, hasher, issuer)
        result = orchestrator.login("alice@example.com", "Secret123!")
        if isinstance(result, TokenPair):
            ...
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.hasher = hasher
        self.issuer = issuer
        self.resolver = IdentityResolver(users, hasher)

    # ------------------------------------------------------------------
    # Flows that end in a new session
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> TokenPair | AuthFailure:
        try:
            resolution = self.resolver.login_password(email, password)
            if isinstance(resolution, Rejected):
                logger.info("Login rejected: %s", resolution.reason.code)
                return AuthFailure(resolution.reason)
            pair = self._start_session(resolution.user)
        except AuthError as exc:
            return self._fail("login", exc)
        logger.info("Login successful for user %s", resolution.user.id)
        return pair

    def register(self, email: str, password: str, first_name: str = "", last_name: str = "") -> TokenPair | AuthFailure:
        try:
            resolution = self.resolver.register_password(email, password, first_name, last_name)
            if isinstance(resolution, Rejected):
                logger.info("Registration rejected: %s", resolution.reason.code)
                return AuthFailure(resolution.reason)
            pair = self._start_session(resolution.user)
        except AuthError as exc:
            return self._fail("register", exc)
        return pair

    def oauth_callback(self, profile: OAuthProfile) -> TokenPair | AuthFailure:
        try:
            resolution = self.resolver.resolve_oauth(profile)
            if isinstance(resolution, Rejected):
                logger.info("OAuth login via %s rejected: %s", profile.provider, resolution.reason.code)
                return AuthFailure(resolution.reason)
            pair = self._start_session(resolution.user)
        except AuthError as exc:
            return self._fail("oauth_callback", exc)
        logger.info("OAuth login via %s successful for user %s", profile.provider, resolution.user.id)
        return pair

    # ------------------------------------------------------------------
    # Refresh (rotation)
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair | AuthFailure:
        """Exchange a refresh token for a new pair, revoking the old session.

        Failure modes, in order of checking:
          TokenInvalid    -- malformed, bad signature, or an access token.
          TokenExpired    -- signature fine, past exp.
          SessionNotFound -- no valid session (revoked, replayed, lost a race,
                             or the owning user is gone or inactive).
        """
        try:
            claims = self.issuer.verify(refresh_token, TokenKind.REFRESH)
            session = self.sessions.find_valid(refresh_token)
            if session is None or session.user_id != claims.subject_id:
                raise SessionNotFound()

            user = self.users.find_by_id(session.user_id)
            if user is None or not user.is_active:
                self.sessions.revoke(session.user_id, refresh_token)
                raise SessionNotFound("Session owner missing or inactive.")

            new_refresh = self.issuer.issue_refresh_token(user)
            rotated = self.sessions.rotate(
                user.id,
                refresh_token,
                new_refresh,
                self.issuer.refresh_expires_at(),
            )
            if rotated is None:
                raise SessionNotFound("Session was revoked before rotation completed.")
            access = self.issuer.issue_access_token(user)
        except AuthError as exc:
            return self._fail("refresh", exc)

        logger.info("Rotated session for user %s", user.id)
        return TokenPair(access_token=access, refresh_token=new_refresh, expires_in=self.issuer.access_expires_in)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, user_id: str, refresh_token: str) -> LogoutResult | AuthFailure:
        """Revoke the matching session. Succeeds whether or not one existed."""
        try:
            self.sessions.revoke(user_id, refresh_token)
        except AuthError as exc:
            return self._fail("logout", exc)
        logger.info("Logout for user %s", user_id)
        return LogoutResult()

    def logout_all(self, user_id: str) -> LogoutResult | AuthFailure:
        try:
            count = self.sessions.revoke_all(user_id)
        except AuthError as exc:
            return self._fail("logout_all", exc)
        logger.info("Revoked %d session(s) for user %s", count, user_id)
        return LogoutResult()

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(
        self,
        user_id: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User | AuthFailure:
        """Change the user's display names and return the fresh record.

        Only profile fields are reachable here: email, password and provider
        identity change through their own flows. None leaves a field as is;
        an empty string clears it.
        """
        fields = {
            name: value
            for name, value in (("first_name", first_name), ("last_name", last_name))
            if value is not None
        }
        try:
            if fields:
                user = self.users.update(user_id, **fields)
            else:
                user = self.users.find_by_id(user_id)
            if user is None:
                raise AccountNotFound(f"No user {user_id} to update.")
        except AuthError as exc:
            return self._fail("update_profile", exc)
        if fields:
            logger.info("Profile updated for user %s (%s)", user_id, ", ".join(sorted(fields)))
        return user

    # ------------------------------------------------------------------
    # Access-token authentication (protected routes)
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> User | AuthFailure:
        """Resolve a bearer access token to an active user."""
        try:
            claims = self.issuer.verify(access_token, TokenKind.ACCESS)
            user = self.users.find_by_id(claims.subject_id)
            if user is None or not user.is_active:
                raise TokenInvalid("unknown_subject")
        except AuthError as exc:
            return AuthFailure(exc)
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_session(self, user: User) -> TokenPair:
        access = self.issuer.issue_access_token(user)
        refresh = self.issuer.issue_refresh_token(user)
        self.sessions.create(user.id, refresh, self.issuer.refresh_expires_at())
        return TokenPair(access_token=access, refresh_token=refresh, expires_in=self.issuer.access_expires_in)

    @staticmethod
    def _fail(flow: str, exc: AuthError) -> AuthFailure:
        if exc.infrastructure:
            logger.error("%s failed: %s (%s)", flow, exc.code, exc)
        else:
            logger.info("%s failed: %s", flow, exc.code)
        return AuthFailure(exc)


def build_orchestrator(settings: Settings, users: UserStore, sessions: SessionStore) -> AuthOrchestrator:
    """Assemble the orchestrator from settings and already-opened stores."""
    return AuthOrchestrator(
        users=users,
        sessions=sessions,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        issuer=TokenIssuer(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        ),
    )
