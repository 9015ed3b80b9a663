"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST   /api/v1/auth/login           -- email/password admin login; sets JWT cookie
  POST   /api/v1/auth/logout          -- clears cookie; 200
  GET    /api/v1/auth/me              -- current user info (requires auth)
  GET    /api/v1/auth/providers       -- list enabled sign-in providers (public)
  GET    /api/v1/auth/users           -- list all users (admin)
  POST   /api/v1/auth/users           -- create user (super_admin)
  GET    /api/v1/auth/users/{id}      -- one user (admin)
  PATCH  /api/v1/auth/users/{id}      -- update name/is_active (super_admin)
  PATCH  /api/v1/auth/users/{id}/role -- change role (super_admin)
  DELETE /api/v1/auth/users/{id}      -- delete user (super_admin)
  PATCH  /api/v1/auth/profile         -- update own display name (requires auth)

Security:
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M4] PATCH /users/{id}, PATCH /users/{id}/role and DELETE /users/{id}
       block acting on your own account and removing the last active
       super_admin (by deactivation, demotion or deletion).
  [M5] Cache-Control: no-store on login responses.
  Roles are never accepted when creating an account: accounts created here
  get their role from domain_to_role(), the same policy the Google callback
  uses. PATCH /users/{id}/role is the only explicit role change.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    OAuthProviderInfo,
    ProfilePatch,
    RoleUpdate,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.dependencies import get_current_user, require_admin, require_super_admin
from auth.models import User
from auth.oauth import get_enabled_providers
from auth.roles import Role, can_access_admin, domain_to_role
from auth.store import UserStore
from auth.tokens import authenticate_user, clear_auth_cookie, create_access_token, hash_password, set_auth_cookie

# Auth policy:
# - POST  /api/v1/auth/login:        public -- login endpoint must be unauthenticated
# - POST  /api/v1/auth/logout:       public -- clearing a cookie needs no prior auth
# - GET   /api/v1/auth/providers:    public -- login page calls this to render buttons
# - GET   /api/v1/auth/me:           requires auth (get_current_user)
# - GET   /api/v1/auth/users:        requires admin (require_admin)
# - POST  /api/v1/auth/users:        requires super_admin (require_super_admin)
# - GET   /api/v1/auth/users/{id}:   requires admin (require_admin)
# - PATCH /api/v1/auth/users/{id}:   requires super_admin (require_super_admin)
# - PATCH /api/v1/auth/users/{id}/role: requires super_admin (require_super_admin)
# - DELETE /api/v1/auth/users/{id}:  requires super_admin (require_super_admin)
# - PATCH /api/v1/auth/profile:      requires auth (get_current_user)
router = APIRouter()

logger = logging.getLogger("gentlespace.api.auth")


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Wrong email and wrong password return the same "bad_credentials" error.
    A correct password on an account without admin access returns 403
    "access_denied" -- an authorization decision, not a credentials error.
    """
    settings = request.app.state.settings
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    if not can_access_admin(user.role):
        resp = JSONResponse(
            status_code=403,
            content={"error": {"code": "access_denied", "message": "Admin access required."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    user_store.update_last_login(user.id)
    token = create_access_token(settings, user.id, user.email, user.role)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.token_expire_seconds,
            email=user.email,
            role=user.role,
        ).model_dump(mode="json"),
    )
    set_auth_cookie(settings, resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured sign-in providers (empty when Google is not set up)."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        email=current_user.email,
        name=current_user.name,
        role=current_user.role,
        oauth_provider=current_user.oauth_provider,
    )


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(request: Request, current_user: User = Depends(require_admin)) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return [_user_to_response(u) for u in user_store.list_users()]


@router.get("/auth/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, current_user: User = Depends(require_admin)) -> UserResponse:
    """Return one user account. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return _user_to_response(_get_or_404(user_store, user_id))


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_super_admin),
) -> UserResponse:
    """Create a user account ahead of its first sign-in. Super admin only.

    The role comes from the email domain. A later Google sign-in with the same
    email links to this record instead of creating a new one.
    """
    settings = request.app.state.settings
    user_store: UserStore = request.app.state.user_store

    role = domain_to_role(
        body.email,
        admin_domain=settings.admin_email_domain,
        super_admin_email=settings.super_admin_email,
    )
    new_user = User(
        email=body.email,
        name=body.name,
        role=role.value,
        hashed_password=hash_password(body.password) if body.password else None,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that email already exists."},
        ) from exc

    return _user_to_response(user_store.get_by_id(user_id))


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_super_admin),
) -> UserResponse:
    """Update a user's display name or active status. Super admin only.

    [M4] Prevents:
      - Self-deactivation (locking yourself out).
      - Deactivating the last active super_admin (no recovery path without DB access).
    """
    user_store: UserStore = request.app.state.user_store
    target = _get_or_404(user_store, user_id)

    updates: dict = {}
    if body.name is not None:
        updates["name"] = body.name
    if body.is_active is not None:
        if not body.is_active and target.id == current_user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        if not body.is_active and target.role == Role.super_admin.value and target.is_active:
            _ensure_not_last_super_admin(user_store, "Cannot deactivate the last super admin.")
        updates["is_active"] = body.is_active

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    user_store.update_user(user_id, **updates)
    return _user_to_response(user_store.get_by_id(user_id))


@router.patch("/auth/users/{user_id}/role", response_model=UserResponse)
def update_user_role(
    request: Request,
    user_id: int,
    body: RoleUpdate,
    current_user: User = Depends(require_super_admin),
) -> UserResponse:
    """Change a user's role. Super admin only.

    This is the only way to set a role other than the one domain_to_role()
    assigned at creation. With REDERIVE_ROLE_ON_LOGIN=true the domain policy
    overwrites it again on the user's next Google sign-in.

    [M4] Prevents:
      - Changing your own role.
      - Demoting the last active super_admin.
    """
    user_store: UserStore = request.app.state.user_store
    target = _get_or_404(user_store, user_id)
    new_role = body.role.value

    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_role_change", "message": "You cannot change your own role."},
        )
    if target.role == Role.super_admin.value and new_role != target.role and target.is_active:
        _ensure_not_last_super_admin(user_store, "Cannot demote the last super admin.")

    if new_role != target.role:
        user_store.update_user(user_id, role=new_role)
        logger.info("User id=%s role changed %s -> %s by user id=%s", user_id, target.role, new_role, current_user.id)
    return _user_to_response(user_store.get_by_id(user_id))


@router.delete("/auth/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_super_admin),
) -> Response:
    """Permanently delete a user account. Super admin only.

    [M4] Prevents deleting your own account and deleting the last active
    super_admin. A later Google sign-in with the same email creates a fresh
    account with the domain-derived role.
    """
    user_store: UserStore = request.app.state.user_store
    if user_id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    target = _get_or_404(user_store, user_id)
    if target.role == Role.super_admin.value and target.is_active:
        _ensure_not_last_super_admin(user_store, "Cannot delete the last super admin.")

    user_store.delete_user(user_id)
    logger.info("User id=%s (role=%s) deleted by user id=%s", user_id, target.role, current_user.id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------


@router.patch("/auth/profile", response_model=MeResponse)
def update_profile(
    request: Request,
    body: ProfilePatch,
    current_user: User = Depends(get_current_user),
) -> MeResponse:
    """Update the signed-in user's own display name. Any authenticated role."""
    if body.name is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    user_store: UserStore = request.app.state.user_store
    user_store.update_user(current_user.id, name=body.name)
    updated = _get_or_404(user_store, current_user.id)
    return MeResponse(
        user_id=updated.id,
        email=updated.email,
        name=updated.name,
        role=updated.role,
        oauth_provider=updated.oauth_provider,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        oauth_provider=user.oauth_provider,
        is_active=user.is_active,
        created_at=user.created_at or "",
        last_login=user.last_login,
    )


def _get_or_404(user_store: UserStore, user_id: int) -> User:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return user


def _ensure_not_last_super_admin(user_store: UserStore, message: str) -> None:
    """Raise 400 unless another active super_admin would remain. [M4]"""
    if user_store.count_active(Role.super_admin.value) <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_super_admin", "message": message},
        )
