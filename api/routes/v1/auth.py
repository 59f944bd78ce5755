"""
api/routes/v1/auth.py -- Credential and session REST endpoints.

Routes:
  POST /api/v1/auth/register                 -- create password account; 201 + token pair
  POST /api/v1/auth/login                    -- password login; token pair
  POST /api/v1/auth/refresh                  -- rotate refresh token; new token pair
  POST /api/v1/auth/logout                   -- revoke one session (requires auth)
  POST /api/v1/auth/logout-all               -- revoke every session (requires auth)
  GET  /api/v1/auth/me                       -- current user profile (requires auth)
  PATCH /api/v1/auth/me                      -- change first/last name (requires auth)
  GET  /api/v1/auth/providers                -- list enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}         -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback -- code exchange, then token pair

Every handler is a thin adapter: parse the body, call one orchestrator
method, render TokenPair / AuthFailure. No credential logic lives here.

Status mapping for AuthFailure:
  infrastructure (storage_unavailable, internal_error) -> 503 / 500
  account_exists                                       -> 409
  oauth_email_missing, password_too_long               -> 400
  account_not_found                                    -> 404
  everything else (credentials, tokens, sessions)      -> 401

Security:
  [M5] Cache-Control: no-store on every response that carries tokens.
  Logout answers 200 whether or not the session existed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import (
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UpdateProfileRequest,
)
from auth.dependencies import get_current_user, get_orchestrator
from auth.models import AuthFailure, TokenPair, User
from auth.oauth import get_enabled_providers, get_oauth_profile
from auth.orchestrator import AuthOrchestrator
from core.config import get_settings

logger = logging.getLogger("credkeep.api")

# Auth policy:
# - POST /auth/register, /auth/login, /auth/refresh:   public
# - GET  /auth/providers, /auth/oauth/...:             public
# - POST /auth/logout, /auth/logout-all, GET/PATCH /auth/me: requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(body: RegisterRequest, orchestrator: AuthOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    """Create a password account and start its first session.

    Answers 409 when the email is taken by any account, password or OAuth.
    Disclosing that is safe: the caller supplied the email.
    """
    result = orchestrator.register(body.email, body.password, body.first_name, body.last_name)
    return _token_response(result, success_status=201)


@router.post("/auth/login", response_model=TokenResponse)
def login(body: LoginRequest, orchestrator: AuthOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    """Authenticate with email and password.

    The same invalid_credentials error covers unknown email, OAuth-only
    account, wrong password and inactive account.
    """
    result = orchestrator.login(body.email, body.password)
    return _token_response(result)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(body: RefreshRequest, orchestrator: AuthOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    """Exchange a refresh token for a new pair. Each refresh token works once."""
    result = orchestrator.refresh(body.refresh_token)
    return _token_response(result)


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty if none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(get_settings())]


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first, so a crafted
    name cannot select an unregistered client.
    """
    _require_enabled_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", response_model=TokenResponse, name="oauth_callback")
async def oauth_callback(
    request: Request,
    provider: str,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Finish the authorization-code flow and start a session.

    authlib exchanges the code (verifying OAuth state from the session);
    get_oauth_profile() normalizes the provider response and rejects
    unverified emails [H1]; the orchestrator resolves, links or creates the
    user.
    """
    _require_enabled_provider(provider)
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        raise HTTPException(
            status_code=401,
            detail={"code": "oauth_failed", "message": "OAuth authentication failed. Please try again."},
        )

    try:
        profile = await get_oauth_profile(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing identity from %r", provider)
        raise HTTPException(
            status_code=401,
            detail={"code": "oauth_failed", "message": "OAuth authentication failed. Please try again."},
        )

    return _token_response(orchestrator.oauth_callback(profile))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    body: LogoutRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Revoke the session bound to body.refresh_token. Always 200 on success.

    The session is only revoked if it belongs to the authenticated user, and
    the response is identical either way.
    """
    result = orchestrator.logout(current_user.id, body.refresh_token)
    if isinstance(result, AuthFailure):
        return _failure_response(result)
    return JSONResponse(content=MessageResponse(message="Logged out.").model_dump())


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(
    current_user: User = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Revoke every session of the authenticated user."""
    result = orchestrator.logout_all(current_user.id)
    if isinstance(result, AuthFailure):
        return _failure_response(result)
    return JSONResponse(content=MessageResponse(message="Logged out of all sessions.").model_dump())


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return the profile of the currently authenticated user."""
    return MeResponse.from_user(current_user)


@router.patch("/auth/me", response_model=MeResponse)
def update_me(
    body: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Change first and/or last name. Fields outside the profile answer 422."""
    result = orchestrator.update_profile(current_user.id, body.first_name, body.last_name)
    if isinstance(result, AuthFailure):
        return _failure_response(result)
    return JSONResponse(content=MeResponse.from_user(result).model_dump())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_FAILURE_STATUS = {
    "account_exists": 409,
    "oauth_email_missing": 400,
    "password_too_long": 400,
    "account_not_found": 404,
    "storage_unavailable": 503,
    "internal_error": 500,
}


def _require_enabled_provider(provider: str) -> None:
    enabled = {p["name"] for p in get_enabled_providers(get_settings())}
    if provider not in enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": "OAuth provider is not enabled."},
        )


def _token_response(result: TokenPair | AuthFailure, success_status: int = 200) -> JSONResponse:
    if isinstance(result, AuthFailure):
        return _failure_response(result)
    resp = JSONResponse(status_code=success_status, content=TokenResponse.from_pair(result).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _failure_response(failure: AuthFailure) -> JSONResponse:
    status = _FAILURE_STATUS.get(failure.code, 401)
    resp = JSONResponse(
        status_code=status,
        content={"error": {"code": failure.code, "message": failure.message, "detail": None}},
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    if status == 401:
        resp.headers["WWW-Authenticate"] = "Bearer"
    elif status == 503:
        resp.headers["Retry-After"] = "5"
    return resp
