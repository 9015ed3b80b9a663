"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the web login and the Google callback.
  2. Authorization: Bearer <token> header -- API clients using JWTs.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() raises HTTP 403 unless the role may reach the admin area.
require_super_admin() raises HTTP 403 unless the role is super_admin.

Layer rule: no imports from web/. auth/dependencies.py may import from fastapi
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.roles import Role, can_access_admin
from auth.tokens import AUTH_COOKIE, decode_access_token


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated, active User on success, None on any failure.
    The role is read from the database, not from the token, so a deactivated
    account loses access on its next request.
    """
    settings = request.app.state.settings
    user_store = request.app.state.user_store

    token: str | None = request.cookies.get(AUTH_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None

    payload = decode_access_token(settings, token)
    if payload is None:
        return None
    user = user_store.get_by_id(payload["user_id"])
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> User:
    """Require an admin-area role (admin or super_admin)."""
    user = get_current_user(request)
    if not can_access_admin(user.role):
        raise HTTPException(
            status_code=403,
            detail={"code": "access_denied", "message": "Admin access required."},
        )
    return user


def require_super_admin(request: Request) -> User:
    """Require the super_admin role. Used by user management writes."""
    user = get_current_user(request)
    if user.role != Role.super_admin.value:
        raise HTTPException(
            status_code=403,
            detail={"code": "access_denied", "message": "Super admin access required."},
        )
    return user
