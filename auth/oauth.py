"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry and profile normalization.

The authorization-code exchange itself is authlib's job. This module only
decides which providers are registered and turns each provider's token
response into a provider-neutral OAuthProfile for the orchestrator.

Security notes:
  [H1] Email verification is mandatory at this boundary. get_oauth_profile()
       raises ValueError if the provider does not confirm the email is
       verified. An unverified address could belong to an attacker who added
       a victim's email to their provider account, and the resolver links by
       email.

  OAuth state (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware: the state is stored in the session between the
  authorization redirect and the callback.

Supported providers:
  google -- OIDC discovery.
  github -- Authorization code flow; static endpoints.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthProfile
from core.config import Settings

logger = logging.getLogger("credkeep.auth.oauth")


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Register every provider whose client id and secret are configured."""
    oauth = OAuth()

    if settings.google_enabled:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.github_enabled:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    if settings.oidc_enabled:
        oauth.register(
            name="oidc",
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            server_metadata_url=settings.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", settings.oidc_display_name)

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every configured provider.

    Used by GET /api/v1/auth/providers and to validate the {provider} path
    parameter before redirecting anywhere.
    """
    providers: list[dict] = []
    if settings.google_enabled:
        providers.append({"name": "google", "label": "Google"})
    if settings.github_enabled:
        providers.append({"name": "github", "label": "GitHub"})
    if settings.oidc_enabled:
        providers.append({"name": "oidc", "label": settings.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Build an OAuthProfile from a provider token response.

    Raises:
        ValueError: unknown provider, missing subject, or unverified email.
    """
    if provider == "github":
        return await _get_github_profile(client, token)
    elif provider in ("google", "oidc"):
        return oidc_profile_from_token(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_profile(client, token: dict) -> OAuthProfile:
    """GitHub needs two API calls: GET /user for the id, GET /user/emails for
    the primary verified email. Only an entry with primary=true AND
    verified=true is accepted [H1].
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break
    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    given, family = split_display_name(profile.get("name") or profile.get("login") or "")
    return OAuthProfile(
        provider="github",
        provider_id=str(profile["id"]),
        email=email,
        email_verified=True,
        given_name=given,
        family_name=family,
    )


def oidc_profile_from_token(token: dict, provider: str) -> OAuthProfile:
    """Build a profile from the id_token claims authlib parsed into token["userinfo"].

    An absent email_verified claim is treated as unverified [H1]. A missing
    email is passed through as None; the resolver rejects it with
    MissingOAuthEmail.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    subject_id = userinfo.get("sub")
    if not subject_id:
        raise ValueError(f"{provider} OAuth: missing sub claim in userinfo")

    email = userinfo.get("email")
    if email and not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    given = userinfo.get("given_name") or ""
    family = userinfo.get("family_name") or ""
    if not given and not family:
        given, family = split_display_name(userinfo.get("name") or "")
    return OAuthProfile(
        provider=provider,
        provider_id=str(subject_id),
        email=email or None,
        email_verified=bool(email),
        given_name=given,
        family_name=family,
    )


def split_display_name(display_name: str) -> tuple[str, str]:
    """"Ada King Lovelace" -> ("Ada", "King Lovelace")."""
    parts = display_name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])
