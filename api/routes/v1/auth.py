"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST   /api/v1/auth/login               -- password login; sets session cookie
  POST   /api/v1/auth/logout              -- clears cookie; 200 (logs the user if signed in)
  GET    /api/v1/auth/me                  -- current session identity (requires auth)
  POST   /api/v1/auth/change-password     -- self-service rotation (requires auth)
  POST   /api/v1/auth/setup               -- create the first Admin (first-run only)
  GET    /api/v1/auth/users               -- list users (admin only)
  POST   /api/v1/auth/users               -- create user (admin only)
  PATCH  /api/v1/auth/users/{username}    -- change role (admin only)
  DELETE /api/v1/auth/users/{username}    -- delete user (admin only)

Security:
  POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  UserStore.authenticate() provides timing equalization -- use it, never inline.
  Wrong username and wrong password produce the same "bad_credentials" error.
  Cache-Control: no-store on login and user-list responses.
  Every mutating admin call passes the acting username to the store for audit.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    SetupRequest,
    UserCreate,
    UserResponse,
    UserRolePatch,
)
from auth.dependencies import (
    get_client_ip,
    get_client_user_agent,
    get_current_session,
    require_admin,
    try_get_session,
)
from auth.errors import DirectoryError, DirectoryErrorCode
from auth.models import PublicUser, Role, SessionPayload
from auth.sessions import SessionGuard
from auth.store import UserStore
from auth.tokens import clear_session_cookie, set_session_cookie
from core.config import get_settings

# Auth policy:
# - POST   /auth/login, /auth/logout:     public
# - POST   /auth/setup:                   public, but only while no Admin exists
# - GET    /auth/me, /auth/change-password: requires auth (get_current_session)
# - GET|POST /auth/users, PATCH|DELETE /auth/users/{username}: requires admin
router = APIRouter()
logger = logging.getLogger("ecvms.api")

_STATUS_BY_CODE: dict[DirectoryErrorCode, int] = {
    DirectoryErrorCode.invalid_username: 400,
    DirectoryErrorCode.invalid_password: 400,
    DirectoryErrorCode.invalid_role: 400,
    DirectoryErrorCode.self_delete_forbidden: 400,
    DirectoryErrorCode.password_mismatch: 401,
    DirectoryErrorCode.not_found: 404,
    DirectoryErrorCode.already_exists: 409,
    DirectoryErrorCode.last_admin_forbidden: 409,
}


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(get_settings().login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    The token is bound to the requesting client's fingerprint. It is also
    returned in the body for non-browser clients using Bearer auth.
    """
    user_store: UserStore = request.app.state.user_store
    guard: SessionGuard = request.app.state.session_guard

    user = user_store.authenticate(body.username, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    token = guard.issue_session(
        user.username,
        user.role,
        ip=get_client_ip(request),
        user_agent=get_client_user_agent(request),
    )
    max_age = guard.max_age_ms // 1000
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- token type, not a password
            expires_in=max_age,
            username=user.username,
            role=user.role,
        ).model_dump(mode="json"),
    )
    set_session_cookie(resp, token, max_age)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request) -> JSONResponse:
    """Clear the session cookie. The token itself stays valid until it expires.

    Anonymous or stale-session logouts still succeed; only a valid session
    is recorded in the log.
    """
    session = try_get_session(request)
    if session is not None:
        logger.info("User %s logged out", session.username)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    return resp


@router.post("/auth/setup", response_model=UserResponse, status_code=201)
async def setup(request: Request, body: SetupRequest) -> UserResponse:
    """Create the first Admin account.

    Only available while the directory holds no Admin. The store is
    re-checked here rather than trusting app.state.setup_required alone, so
    two racing setup requests cannot both succeed: the second one either sees
    the Admin or fails with already_exists.
    """
    user_store: UserStore = request.app.state.user_store
    if user_store.has_admin():
        raise HTTPException(
            status_code=409,
            detail={"code": "setup_complete", "message": "Setup has already been completed."},
        )
    result = user_store.create_user(body.username, body.password, Role.admin, created_by="setup")
    user = _unwrap(result)
    request.app.state.setup_required = False
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, session: SessionPayload = Depends(get_current_session)) -> MeResponse:
    """Return the identity carried by the current session token."""
    guard: SessionGuard = request.app.state.session_guard
    return MeResponse(
        username=session.username,
        role=session.role,
        issued_at=session.issued_at,
        expires_at=session.issued_at + guard.max_age_ms,
    )


@router.post("/auth/change-password", response_model=MessageResponse)
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    session: SessionPayload = Depends(get_current_session),
) -> MessageResponse:
    """Rotate the caller's own password. Requires the current password."""
    user_store: UserStore = request.app.state.user_store
    result = user_store.change_password(session.username, body.current_password, body.new_password)
    _unwrap(result)
    return MessageResponse(message="Password changed successfully.")


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
async def list_users(request: Request, session: SessionPayload = Depends(require_admin)) -> JSONResponse:
    """List all user accounts in creation order. Admin only."""
    user_store: UserStore = request.app.state.user_store
    users = [UserResponse.from_user(u).model_dump(mode="json") for u in user_store.list_users()]
    return JSONResponse(content=users, headers={"Cache-Control": "no-store"})


@router.post("/auth/users", response_model=UserResponse, status_code=201)
async def create_user(
    request: Request,
    body: UserCreate,
    session: SessionPayload = Depends(require_admin),
) -> UserResponse:
    """Create a new user account. Admin only."""
    user_store: UserStore = request.app.state.user_store
    result = user_store.create_user(body.username, body.password, body.role, created_by=session.username)
    return UserResponse.from_user(_unwrap(result))


@router.patch("/auth/users/{username}", response_model=UserResponse)
async def update_user_role(
    request: Request,
    username: str,
    body: UserRolePatch,
    session: SessionPayload = Depends(require_admin),
) -> UserResponse:
    """Change a user's role. Demoting the last Admin is refused. Admin only.

    Sessions are not re-validated against the directory, so the user's
    existing token keeps its old role until it expires.
    """
    user_store: UserStore = request.app.state.user_store
    result = user_store.update_role(username, body.role, requested_by=session.username)
    return UserResponse.from_user(_unwrap(result))


@router.delete("/auth/users/{username}", response_model=UserResponse)
async def delete_user(
    request: Request,
    username: str,
    session: SessionPayload = Depends(require_admin),
) -> UserResponse:
    """Delete a user. Self-deletion and deleting the last Admin are refused. Admin only."""
    user_store: UserStore = request.app.state.user_store
    result = user_store.delete_user(username, requested_by=session.username)
    return UserResponse.from_user(_unwrap(result))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _unwrap(result: PublicUser | DirectoryError) -> PublicUser:
    """Turn a directory error into the matching HTTP error."""
    if isinstance(result, DirectoryError):
        raise HTTPException(
            status_code=_STATUS_BY_CODE.get(result.code, 400),
            detail={"code": result.code.value, "message": result.message},
        )
    return result
