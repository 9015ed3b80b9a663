"""
web/routes.py -- Jinja2 template routes for the admin web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (settings, user store, OAuth registry, callback handler).

Routes:
  GET  /                  -- redirect to /admin/dashboard
  GET  /admin             -- redirect to /admin/login
  GET  /admin/login       -- email/password form + "Sign in with Google"
  POST /admin/login       -- handle password login
  POST /admin/logout      -- clear cookie, redirect /admin/login
  GET  /admin/dashboard   -- admin dashboard (admin or super_admin)
  GET  /auth/google       -- start Google sign-in (redirect to provider)
  GET  /auth/callback     -- provider callback; allow -> dashboard,
                             otherwise the sign-in result page

The callback path must match the redirect URI registered with Google exactly.
Locally that is http://localhost:8000/auth/callback; in production set
OAUTH_REDIRECT_URI to the deployed URL of the same path.
"""

import logging
from pathlib import Path
from typing import Optional

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.callback import (
    ACCESS_DENIED,
    ACCOUNT_DISABLED,
    BACKEND_ERROR,
    OAUTH_FAILED,
    PROVIDER_NOT_ENABLED,
    CallbackResult,
    IdentityCallbackHandler,
    LoginAttempt,
    LoginState,
)
from auth.dependencies import try_get_current_user
from auth.oauth import extract_identity, get_enabled_providers, is_provider_disabled_error, is_provider_enabled
from auth.roles import can_access_admin
from auth.store import UserStore
from auth.tokens import authenticate_user, clear_auth_cookie, create_access_token, set_auth_cookie

logger = logging.getLogger("gentlespace.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

PROVIDER = "google"
DASHBOARD_PATH = "/admin/dashboard"
LOGIN_PATH = "/admin/login"
# Session key holding the login state between /auth/google and /auth/callback.
_ATTEMPT_KEY = "login_state"

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on /admin/login [M3].
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email or password.",
    "access_denied": "Access denied. Admin privileges are required.",
    "account_disabled": "Your account has been disabled. Contact an administrator.",
    "oauth_failed": "Google sign-in failed. Please try again.",
    "signed_out": "You have been signed out.",
}

# Page copy and HTTP status for each non-allowed callback outcome.
_RESULT_PAGES: dict[str, dict] = {
    PROVIDER_NOT_ENABLED: {
        "status_code": 503,
        "title": "Google sign-in is not enabled",
        "message": "The Google sign-in provider is not enabled for this site. "
        "An administrator has been notified. Please sign in with your email and password.",
    },
    BACKEND_ERROR: {
        "status_code": 503,
        "title": "Sign-in could not be completed",
        "message": "Something went wrong while signing you in. Please try again.",
    },
    OAUTH_FAILED: {
        "status_code": 400,
        "title": "Sign-in failed",
        "message": "Google did not complete the sign-in. Please try again.",
    },
    ACCESS_DENIED: {
        "status_code": 403,
        "title": "Access denied",
        "message": "Your account does not have access to the admin area.",
    },
    ACCOUNT_DISABLED: {
        "status_code": 403,
        "title": "Account disabled",
        "message": "Your account has been disabled. Contact an administrator.",
    },
}


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative URLs ("//evil.example").
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return DASHBOARD_PATH


def _redirect_uri(request: Request) -> str:
    settings = request.app.state.settings
    return settings.oauth_redirect_uri or str(request.url_for("oauth_callback"))


def _render_result(request: Request, result: CallbackResult) -> HTMLResponse:
    """Render the terminal page for a denied or failed sign-in."""
    settings = request.app.state.settings
    page = _RESULT_PAGES.get(result.error_code or "", _RESULT_PAGES[BACKEND_ERROR])
    resp = templates.TemplateResponse(
        request,
        "auth_result.html",
        {
            "state": result.state.value,
            "error_code": result.error_code,
            "title": page["title"],
            "message": page["message"],
            "user": result.user,
            # Provider text is operator-facing; shown only in debug mode.
            "detail": result.detail if settings.debug else None,
            "retry": result.error_code in (BACKEND_ERROR, OAUTH_FAILED),
            "login_path": LOGIN_PATH,
        },
        status_code=page["status_code"],
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _issue_session(request: Request, user, target: str) -> RedirectResponse:
    settings = request.app.state.settings
    token = create_access_token(settings, user.id, user.email, user.role)
    resp = RedirectResponse(target, status_code=302)
    set_auth_cookie(settings, resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Landing redirects
# ---------------------------------------------------------------------------


@router.get("/", include_in_schema=False)
def index() -> RedirectResponse:
    return RedirectResponse(DASHBOARD_PATH, status_code=302)


@router.get("/admin", include_in_schema=False)
def admin_root() -> RedirectResponse:
    return RedirectResponse(LOGIN_PATH, status_code=302)


# ---------------------------------------------------------------------------
# Google sign-in
# ---------------------------------------------------------------------------


@router.get("/auth/google")
async def oauth_redirect(request: Request):
    """Send the browser to Google's consent page (idle -> awaiting_provider_redirect).

    The attempt's state is stored in the session so the callback can tell a
    sign-in in progress from a stray or replayed callback.
    """
    handler: IdentityCallbackHandler = request.app.state.callback_handler
    settings = request.app.state.settings
    attempt = LoginAttempt()
    if not is_provider_enabled(settings, PROVIDER):
        return _render_result(request, handler.provider_not_enabled(PROVIDER, attempt))

    attempt.advance(LoginState.awaiting_provider_redirect)
    request.session[_ATTEMPT_KEY] = attempt.state.value
    client = request.app.state.oauth.create_client(PROVIDER)
    try:
        return await client.authorize_redirect(request, _redirect_uri(request))
    except httpx.HTTPError:
        # Discovery document fetch failed
        logger.exception("Could not reach %s to start sign-in", PROVIDER)
        request.session.pop(_ATTEMPT_KEY, None)
        return _render_result(request, handler.failed(attempt, BACKEND_ERROR))


@router.get("/auth/callback", name="oauth_callback")
async def oauth_callback(request: Request):
    """Process the provider callback (processing_callback -> terminal state).

    Flow:
      1. Restore the attempt from the session (missing -> idle) and clear it.
      2. Provider-reported error (?error=...) -> provider_not_enabled or oauth_failed.
      3. No sign-in in progress -> oauth_failed.
      4. Exchange the authorization code (authlib verifies state and id_token).
      5. Extract the verified email and profile name [H1].
      6. Find-or-create the user and decide access (IdentityCallbackHandler).
      7. authorized -> JWT cookie + redirect to the dashboard;
         denied/failed -> result page with a link back to the login form.
    """
    handler: IdentityCallbackHandler = request.app.state.callback_handler
    settings = request.app.state.settings
    attempt = LoginAttempt.restore(request.session.pop(_ATTEMPT_KEY, None))

    provider_error = request.query_params.get("error")
    if provider_error:
        description = request.query_params.get("error_description")
        return _render_result(request, handler.provider_error(PROVIDER, attempt, provider_error, description))

    if not is_provider_enabled(settings, PROVIDER):
        return _render_result(request, handler.provider_not_enabled(PROVIDER, attempt))

    if attempt.state is not LoginState.awaiting_provider_redirect:
        logger.warning("%s callback received with no sign-in in progress", PROVIDER)
        return _render_result(request, handler.failed(attempt, OAUTH_FAILED, "No sign-in in progress"))

    attempt.advance(LoginState.processing_callback)
    client = request.app.state.oauth.create_client(PROVIDER)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        if is_provider_disabled_error(exc.error, exc.description):
            return _render_result(request, handler.provider_error(PROVIDER, attempt, exc.error, exc.description))
        logger.warning("OAuth token exchange failed for %r: %s", PROVIDER, exc.error)
        return _render_result(request, handler.failed(attempt, OAUTH_FAILED, exc.description))
    except httpx.HTTPError:
        logger.exception("Network failure during %s token exchange", PROVIDER)
        return _render_result(request, handler.failed(attempt, BACKEND_ERROR))

    try:
        identity = extract_identity(token, PROVIDER)
    except ValueError as exc:
        logger.warning("Sign-in rejected: %s", exc)
        return _render_result(request, handler.failed(attempt, OAUTH_FAILED, str(exc)))

    result = handler.handle(identity, attempt)
    if not result.allowed:
        return _render_result(request, result)
    return _issue_session(request, result.user, DASHBOARD_PATH)


# ---------------------------------------------------------------------------
# Email/password login
# ---------------------------------------------------------------------------


@router.get("/admin/login", response_class=HTMLResponse)
def login_form(request: Request):
    """Render the login page with the password form and the Google button."""
    user = try_get_current_user(request)
    if user is not None and can_access_admin(user.role):
        return RedirectResponse(DASHBOARD_PATH, status_code=302)

    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""), None)
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "providers": get_enabled_providers(request.app.state.settings),
            "next": request.query_params.get("next", ""),
        },
    )


@router.post("/admin/login")
def login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    next: str = Form(""),
) -> RedirectResponse:
    """Handle the email/password form. Only admin-area roles get a session."""
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, email, password)  # [C1] timing equalization
    if user is None:
        return RedirectResponse(f"{LOGIN_PATH}?error=bad_credentials", status_code=302)
    if not can_access_admin(user.role):
        logger.info("Password login denied admin access for user id=%s", user.id)
        return RedirectResponse(f"{LOGIN_PATH}?error=access_denied", status_code=302)

    user_store.update_last_login(user.id)
    return _issue_session(request, user, _safe_next(next))  # [C2]


@router.post("/admin/logout")
def logout() -> RedirectResponse:
    """Clear the JWT cookie and redirect to the login page."""
    resp = RedirectResponse(f"{LOGIN_PATH}?error=signed_out", status_code=302)
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/admin/dashboard", response_class=HTMLResponse)
def dashboard(request: Request):
    """Admin landing page. Unauthenticated -> login; wrong role -> access denied."""
    user = try_get_current_user(request)
    if user is None:
        return RedirectResponse(f"{LOGIN_PATH}?next={DASHBOARD_PATH}", status_code=302)
    if not can_access_admin(user.role):
        resp = RedirectResponse(f"{LOGIN_PATH}?error=access_denied", status_code=302)
        clear_auth_cookie(resp)
        return resp

    user_store: UserStore = request.app.state.user_store
    users = user_store.list_users() if user.role == "super_admin" else []
    resp = templates.TemplateResponse(
        request,
        "dashboard.html",
        {"current_user": user, "users": users},
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp
