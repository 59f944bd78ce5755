"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>". Verification goes
through AuthOrchestrator.authenticate(), so protected routes share the token
rules (signature, type, expiry) and the active-user check with every other
flow.

get_orchestrator() returns the process-wide orchestrator built in the API
lifespan. get_current_user() wraps authenticate() and raises HTTP 401 on
failure, distinguishing token_expired (client should refresh) from
invalid_token (client should log in again).

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AuthFailure, User
from auth.orchestrator import AuthOrchestrator


def get_orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


def bearer_token(request: Request) -> str | None:
    """Return the bearer token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(request: Request) -> User:
    """Require a valid access token. Raises HTTP 401 (or 503) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = get_orchestrator(request).authenticate(token)
    if isinstance(result, AuthFailure):
        raise HTTPException(
            status_code=503 if result.infrastructure else 401,
            detail={"code": result.code, "message": result.message},
            headers=None if result.infrastructure else {"WWW-Authenticate": "Bearer"},
        )
    return result
