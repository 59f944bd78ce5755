"""Unit tests for auth/identity.py -- IdentityResolver.

Covers:
- registration rejects an existing email whatever its auth method
- password login failures are indistinguishable (same code, same message)
- password login upgrades a hash made with a lower cost
- OAuth resolution: existing identity, link by email, create, missing email
- linking keeps the password and upgrades email_verified
- inactive accounts never authenticate
- email normalization lives with the domain models, not the SQL store
"""

from __future__ import annotations

import ast
import inspect

import pytest

import auth.identity as identity_module
from auth.errors import AccountAlreadyExists, InvalidCredentials, MissingOAuthEmail
from auth.identity import IdentityResolver
from auth.models import Authenticated, OAuthProfile, Rejected, User, normalize_email
from auth.passwords import PasswordHasher
from auth.store import SqlUserStore


@pytest.fixture
def resolver(user_store: SqlUserStore, hasher: PasswordHasher) -> IdentityResolver:
    return IdentityResolver(user_store, hasher)


def _github(provider_id: str = "gh-1", email: str | None = "alice@example.com", **kw) -> OAuthProfile:
    return OAuthProfile(provider="github", provider_id=provider_id, email=email, **kw)


class TestRegister:
    def test_creates_password_user(self, resolver: IdentityResolver, hasher: PasswordHasher) -> None:
        result = resolver.register_password("Alice@Example.com", "Secret123!", "Alice", "Liddell")
        assert isinstance(result, Authenticated)
        assert result.user.email == "alice@example.com"
        assert result.user.first_name == "Alice"
        assert hasher.verify("Secret123!", result.user.password_hash)

    def test_duplicate_password_account(self, resolver: IdentityResolver) -> None:
        resolver.register_password("alice@example.com", "Secret123!")
        result = resolver.register_password("ALICE@example.com", "Other123!")
        assert isinstance(result, Rejected)
        assert isinstance(result.reason, AccountAlreadyExists)

    def test_duplicate_oauth_only_account(self, resolver: IdentityResolver, user_store: SqlUserStore) -> None:
        """Registration never silently links a password onto an OAuth account."""
        user_store.create(User(email="alice@example.com", oauth_provider="google", oauth_id="g-1"))
        result = resolver.register_password("alice@example.com", "Secret123!")
        assert isinstance(result, Rejected)
        assert isinstance(result.reason, AccountAlreadyExists)
        assert user_store.find_by_email("alice@example.com").password_hash is None


class TestLogin:
    @pytest.fixture(autouse=True)
    def _accounts(self, resolver: IdentityResolver, user_store: SqlUserStore) -> None:
        resolver.register_password("alice@example.com", "Secret123!")
        user_store.create(User(email="oauth@example.com", oauth_provider="github", oauth_id="gh-9"))
        carol = resolver.register_password("carol@example.com", "Secret123!").user
        user_store.update(carol.id, is_active=False)

    def test_correct_password(self, resolver: IdentityResolver) -> None:
        result = resolver.login_password("alice@example.com", "Secret123!")
        assert isinstance(result, Authenticated)
        assert result.user.email == "alice@example.com"

    def test_email_lookup_is_case_insensitive(self, resolver: IdentityResolver) -> None:
        assert isinstance(resolver.login_password("  ALICE@example.com", "Secret123!"), Authenticated)

    @pytest.mark.parametrize(
        "email, password",
        [
            ("alice@example.com", "wrong-password"),
            ("nobody@example.com", "Secret123!"),
            ("oauth@example.com", "Secret123!"),
            ("carol@example.com", "Secret123!"),
        ],
        ids=["wrong-password", "unknown-email", "oauth-only", "inactive"],
    )
    def test_failures_are_indistinguishable(self, resolver: IdentityResolver, email: str, password: str) -> None:
        result = resolver.login_password(email, password)
        assert isinstance(result, Rejected)
        assert isinstance(result.reason, InvalidCredentials)
        assert result.reason.code == "invalid_credentials"
        assert result.reason.public_message == "Invalid email or password."

    def test_unknown_email_still_runs_a_verification(self, resolver: IdentityResolver, monkeypatch) -> None:
        calls = []
        original = resolver.hasher.verify
        monkeypatch.setattr(resolver.hasher, "verify", lambda p, h: calls.append(h) or original(p, h))
        resolver.login_password("nobody@example.com", "Secret123!")
        assert len(calls) == 1


class TestRehashOnLogin:
    def test_low_cost_hash_upgraded(self, user_store: SqlUserStore) -> None:
        weak = PasswordHasher(rounds=4)
        user = user_store.create(User(email="alice@example.com", password_hash=weak.hash("Secret123!")))
        strong = PasswordHasher(rounds=5)
        result = IdentityResolver(user_store, strong).login_password("alice@example.com", "Secret123!")
        assert isinstance(result, Authenticated)
        stored = user_store.find_by_id(user.id).password_hash
        assert stored.startswith("$2b$05$")
        assert strong.verify("Secret123!", stored)


class TestResolveOAuth:
    def test_creates_new_user(self, resolver: IdentityResolver) -> None:
        result = resolver.resolve_oauth(
            _github(email="New@Example.com", email_verified=True, given_name="New", family_name="Person")
        )
        assert isinstance(result, Authenticated)
        user = result.user
        assert user.email == "new@example.com"
        assert user.password_hash is None
        assert (user.oauth_provider, user.oauth_id) == ("github", "gh-1")
        assert user.email_verified is True
        assert (user.first_name, user.last_name) == ("New", "Person")

    def test_existing_identity_wins_over_email(self, resolver: IdentityResolver) -> None:
        first = resolver.resolve_oauth(_github()).user
        again = resolver.resolve_oauth(_github(email="changed@example.com"))
        assert isinstance(again, Authenticated)
        assert again.user.id == first.id
        assert again.user.email == "alice@example.com"

    def test_links_existing_password_account(self, resolver: IdentityResolver, hasher: PasswordHasher) -> None:
        registered = resolver.register_password("alice@example.com", "Secret123!").user
        assert registered.email_verified is False

        result = resolver.resolve_oauth(_github(email="ALICE@example.com"))
        assert isinstance(result, Authenticated)
        linked = result.user
        assert linked.id == registered.id
        assert (linked.oauth_provider, linked.oauth_id) == ("github", "gh-1")
        assert linked.email_verified is True
        assert hasher.verify("Secret123!", linked.password_hash)
        assert isinstance(resolver.login_password("alice@example.com", "Secret123!"), Authenticated)

    def test_second_provider_replaces_first(self, resolver: IdentityResolver, user_store: SqlUserStore) -> None:
        first = resolver.resolve_oauth(_github()).user
        result = resolver.resolve_oauth(OAuthProfile(provider="google", provider_id="g-7", email="alice@example.com"))
        assert result.user.id == first.id
        assert user_store.find_by_oauth_identity("google", "g-7").id == first.id
        assert user_store.find_by_oauth_identity("github", "gh-1") is None

    @pytest.mark.parametrize("email", [None, "", "   "])
    def test_missing_email(self, resolver: IdentityResolver, email: str | None) -> None:
        result = resolver.resolve_oauth(_github(email=email))
        assert isinstance(result, Rejected)
        assert isinstance(result.reason, MissingOAuthEmail)

    def test_known_identity_without_email_still_resolves(self, resolver: IdentityResolver) -> None:
        first = resolver.resolve_oauth(_github()).user
        result = resolver.resolve_oauth(_github(email=None))
        assert isinstance(result, Authenticated)
        assert result.user.id == first.id

    def test_inactive_account_rejected(self, resolver: IdentityResolver, user_store: SqlUserStore) -> None:
        user = resolver.resolve_oauth(_github()).user
        user_store.update(user.id, is_active=False)
        result = resolver.resolve_oauth(_github())
        assert isinstance(result, Rejected)
        assert isinstance(result.reason, InvalidCredentials)

    def test_create_race_resolves_to_winner(self, resolver: IdentityResolver, user_store: SqlUserStore, monkeypatch) -> None:
        """The loser of a concurrent first login ends up on the winner's record."""
        winner = user_store.create(User(email="alice@example.com", oauth_provider="github", oauth_id="gh-1"))
        real_find = user_store.find_by_oauth_identity
        lookups = iter([None])

        def first_lookup_misses(provider: str, provider_id: str):
            return next(lookups, real_find(provider, provider_id))

        monkeypatch.setattr(user_store, "find_by_oauth_identity", first_lookup_misses)
        monkeypatch.setattr(user_store, "find_by_email", lambda email: None)

        result = resolver.resolve_oauth(_github())
        assert isinstance(result, Authenticated)
        assert result.user.id == winner.id


class TestEmailNormalization:
    @pytest.mark.parametrize("raw", ["alice@example.com", "  Alice@Example.COM ", "ALICE@EXAMPLE.COM\n"])
    def test_canonical_form(self, raw: str) -> None:
        assert normalize_email(raw) == "alice@example.com"

    def test_resolver_imports_no_store_implementation(self) -> None:
        """The resolver depends on the UserStore contract, never on the SQL store module."""
        tree = ast.parse(inspect.getsource(identity_module))
        imported = {node.module for node in ast.walk(tree) if isinstance(node, ast.ImportFrom)}
        imported |= {alias.name for node in ast.walk(tree) if isinstance(node, ast.Import) for alias in node.names}
        assert "auth.store" not in imported
        assert identity_module.normalize_email is normalize_email
