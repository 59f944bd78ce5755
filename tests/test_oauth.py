"""Unit tests for auth/oauth.py -- provider registry and profile normalization.

Covers:
- only fully configured providers are registered and listed
- OIDC claims become an OAuthProfile; unverified email is refused
- a missing email passes through as None for the resolver to reject
- GitHub profiles use the primary verified address only
- display names split into given and family names
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from auth.oauth import (
    build_oauth_registry,
    get_enabled_providers,
    get_oauth_profile,
    oidc_profile_from_token,
    split_display_name,
)
from core.config import Settings
from tests.conftest import ACCESS_SECRET, REFRESH_SECRET


def _settings(**overrides) -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        **overrides,
    )


class TestRegistry:
    def test_nothing_configured(self) -> None:
        settings = _settings()
        assert get_enabled_providers(settings) == []
        assert build_oauth_registry(settings).create_client("github") is None

    def test_github_and_oidc(self) -> None:
        settings = _settings(
            github_client_id="id",
            github_client_secret="secret",
            oidc_client_id="id",
            oidc_client_secret="secret",
            oidc_discovery_url="https://idp.example.com/.well-known/openid-configuration",
            oidc_display_name="Corp SSO",
        )
        assert get_enabled_providers(settings) == [
            {"name": "github", "label": "GitHub"},
            {"name": "oidc", "label": "Corp SSO"},
        ]
        registry = build_oauth_registry(settings)
        assert registry.create_client("github") is not None
        assert registry.create_client("google") is None


class TestOidcProfile:
    def test_verified_email(self) -> None:
        profile = oidc_profile_from_token(
            {
                "userinfo": {
                    "sub": "1234",
                    "email": "Ada@example.com",
                    "email_verified": True,
                    "given_name": "Ada",
                    "family_name": "Lovelace",
                }
            },
            "google",
        )
        assert profile.provider == "google"
        assert profile.provider_id == "1234"
        assert profile.email == "Ada@example.com"
        assert profile.email_verified is True
        assert (profile.given_name, profile.family_name) == ("Ada", "Lovelace")

    @pytest.mark.parametrize("claims", [{"email_verified": False}, {}])
    def test_unverified_email_refused(self, claims: dict) -> None:
        with pytest.raises(ValueError):
            oidc_profile_from_token({"userinfo": {"sub": "1", "email": "a@example.com", **claims}}, "oidc")

    def test_missing_email_passes_through(self) -> None:
        profile = oidc_profile_from_token({"userinfo": {"sub": "1"}}, "oidc")
        assert profile.email is None
        assert profile.email_verified is False

    def test_name_claim_fallback(self) -> None:
        profile = oidc_profile_from_token({"userinfo": {"sub": "1", "name": "Ada King Lovelace"}}, "oidc")
        assert (profile.given_name, profile.family_name) == ("Ada", "King Lovelace")

    @pytest.mark.parametrize("token", [{}, {"userinfo": {"email": "a@example.com", "email_verified": True}}])
    def test_missing_userinfo_or_subject(self, token: dict) -> None:
        with pytest.raises(ValueError):
            oidc_profile_from_token(token, "oidc")


def _github_client(user: dict, emails: list[dict]) -> MagicMock:
    def response(payload):
        resp = MagicMock()
        resp.json.return_value = payload
        return resp

    client = MagicMock()
    client.get = AsyncMock(side_effect=[response(user), response(emails)])
    return client


class TestGithubProfile:
    def test_primary_verified_email(self) -> None:
        client = _github_client(
            {"id": 42, "login": "octocat", "name": "Mona Octocat"},
            [
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "mona@example.com", "primary": True, "verified": True},
            ],
        )
        profile = asyncio.run(get_oauth_profile(client, "github", {"access_token": "x"}))
        assert profile.provider_id == "42"
        assert profile.email == "mona@example.com"
        assert profile.email_verified is True
        assert (profile.given_name, profile.family_name) == ("Mona", "Octocat")

    def test_unverified_primary_refused(self) -> None:
        client = _github_client({"id": 42, "login": "octocat"}, [{"email": "m@example.com", "primary": True, "verified": False}])
        with pytest.raises(ValueError):
            asyncio.run(get_oauth_profile(client, "github", {"access_token": "x"}))

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError):
            asyncio.run(get_oauth_profile(MagicMock(), "myspace", {}))


class TestSplitDisplayName:
    @pytest.mark.parametrize(
        "name, expected",
        [("Ada", ("Ada", "")), ("  Ada   Lovelace ", ("Ada", "Lovelace")), ("", ("", ""))],
    )
    def test_split(self, name: str, expected: tuple[str, str]) -> None:
        assert split_display_name(name) == expected
