"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Token sources, checked in priority order:
  1. "session" cookie -- set by the login flow.
  2. Authorization: Bearer <token> header -- scripts and API clients.

The resolved SessionPayload is returned to each route explicitly. There is
no module-level "current user"; identity always travels with the request.

try_get_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_session() and raises HTTP 403 if not Admin.

Every AuthFailure becomes the same generic 401. The specific reason is only
logged server-side.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import AuthFailure
from auth.models import Role, SessionPayload
from auth.sessions import SessionGuard, authorize
from auth.tokens import SESSION_COOKIE

logger = logging.getLogger("ecvms.auth")


def get_client_ip(request: Request) -> str:
    """Best-effort client address: proxy headers first, then the socket peer.

    X-Forwarded-For is passed through whole; the fingerprint binder keeps
    only the first hop.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else ""


def get_client_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


def get_request_token(request: Request) -> str | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def authenticate_request(request: Request) -> SessionPayload | AuthFailure:
    guard: SessionGuard = request.app.state.session_guard
    return guard.authenticate(
        get_request_token(request),
        ip=get_client_ip(request),
        user_agent=get_client_user_agent(request),
    )


def try_get_session(request: Request) -> SessionPayload | None:
    """Authenticate the request. Returns None on any failure, never raises."""
    result = authenticate_request(request)
    if isinstance(result, AuthFailure):
        return None
    return result


def get_current_session(request: Request) -> SessionPayload:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: SessionPayload = Depends(get_current_session)): ...
    """
    result = authenticate_request(request)
    if isinstance(result, AuthFailure):
        if result is not AuthFailure.invalid_token or get_request_token(request):
            logger.info("Rejected session on %s: %s", request.url.path, result.value)
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return result


def require_admin(request: Request) -> SessionPayload:
    """Require the Admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if Staff."""
    session = get_current_session(request)
    if not authorize(session, Role.admin):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return session
