"""
auth/callback.py -- Identity Callback Handler for external sign-in.

Turns the result of a provider callback into a User record and a routing
decision. The web layer does the HTTP parts (authlib token exchange, cookies,
redirects, templates); this module owns the decisions so they can be tested
without a browser or a provider.

Login state machine (one instance per sign-in attempt):

    idle -> awaiting_provider_redirect -> processing_callback -> authorized
                                                              -> denied
                                                              -> failed

authorized, denied and failed are terminal for the request. The user gets
back to idle only by starting a new sign-in from the login page.

LoginAttempt holds the current state. The web layer stores it in the session
between GET /auth/google and GET /auth/callback, and every handler method
moves it with advance(), so an out-of-order move raises instead of passing
silently. A disabled provider on the start route is idle -> failed.

Outcome taxonomy:
  failed / provider_not_enabled  Configuration error. The provider's message
                                 is logged verbatim for the operator. Never
                                 retried and never touches the users table.
  failed / backend_error         Database or network failure while processing.
                                 The user sees a generic error and a link back
                                 to the login page. Not retried automatically.
  failed / oauth_failed          Token exchange failed, consent was declined,
                                 or the email is not verified.
  denied / access_denied         Valid identity, role without admin access.
                                 Not an error; rendered differently from
                                 backend_error and answered with HTTP 403.
  denied / account_disabled      The matching account has been deactivated.

Side effects: handle() may insert a users row (first sign-in) and stamps
last_login on authorized sign-ins.

Role policy: the role is computed by auth.roles.domain_to_role() when the row
is created. Later sign-ins keep the stored role unless the deployment sets
REDERIVE_ROLE_ON_LOGIN=true.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from auth.models import ProviderIdentity, User
from auth.oauth import is_provider_disabled_error
from auth.roles import can_access_admin, domain_to_role
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("gentlespace.auth.callback")

# ---------------------------------------------------------------------------
# Login states
# ---------------------------------------------------------------------------


class LoginState(str, Enum):
    idle = "idle"
    awaiting_provider_redirect = "awaiting_provider_redirect"
    processing_callback = "processing_callback"
    authorized = "authorized"
    denied = "denied"
    failed = "failed"


TERMINAL_STATES = frozenset({LoginState.authorized, LoginState.denied, LoginState.failed})

_TRANSITIONS: dict[LoginState, frozenset] = {
    LoginState.idle: frozenset({LoginState.awaiting_provider_redirect, LoginState.failed}),
    LoginState.awaiting_provider_redirect: frozenset({LoginState.processing_callback, LoginState.failed}),
    LoginState.processing_callback: TERMINAL_STATES,
    LoginState.authorized: frozenset({LoginState.idle}),
    LoginState.denied: frozenset({LoginState.idle}),
    LoginState.failed: frozenset({LoginState.idle}),
}


def advance(current: LoginState, target: LoginState) -> LoginState:
    """Return target if the transition is legal, else raise ValueError."""
    if target not in _TRANSITIONS[current]:
        raise ValueError(f"Illegal login state transition: {current.value} -> {target.value}")
    return target


class LoginAttempt:
    """The state of one sign-in attempt.

    The web layer keeps the state in the session between the redirect to the
    provider and the callback (restore() and state.value), so a callback that arrives
    with no sign-in in progress is seen as idle. Every move goes through
    advance(); an illegal one raises ValueError.
    """

    def __init__(self, state: LoginState = LoginState.idle) -> None:
        self.state = state

    @classmethod
    def restore(cls, value: str | None) -> "LoginAttempt":
        """Rebuild an attempt from a stored state value. Unknown or missing -> idle."""
        try:
            return cls(LoginState(value)) if value else cls()
        except ValueError:
            return cls()

    def advance(self, target: LoginState) -> LoginState:
        self.state = advance(self.state, target)
        return self.state


# ---------------------------------------------------------------------------
# Outcome codes
# ---------------------------------------------------------------------------

PROVIDER_NOT_ENABLED = "provider_not_enabled"
BACKEND_ERROR = "backend_error"
OAUTH_FAILED = "oauth_failed"
ACCESS_DENIED = "access_denied"
ACCOUNT_DISABLED = "account_disabled"


@dataclass
class CallbackResult:
    """Terminal outcome of one callback.

    user is set whenever a record was resolved, including denied outcomes, so
    the denied page can tell the person which account was refused.
    detail carries provider text for the operator log; it is never rendered
    to the end user outside debug mode.
    """

    state: LoginState
    user: User | None = None
    error_code: str | None = None
    detail: str | None = None

    @property
    def allowed(self) -> bool:
        return self.state is LoginState.authorized


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class IdentityCallbackHandler:
    """Resolve a provider callback into a User and an allow/deny decision.

    One instance is built at startup (api.main.create_app) with the shared
    UserStore and Settings, and stored on app.state.callback_handler.
    """

    def __init__(self, store: UserStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    # ------------------------------------------------------------------
    # Failure paths that never reach the database
    # ------------------------------------------------------------------

    def provider_not_enabled(
        self, provider: str, attempt: LoginAttempt, detail: str | None = None
    ) -> CallbackResult:
        message = detail or f"Sign-in provider {provider!r} is not enabled"
        logger.error("Configuration error: %s", message)
        return self._finish(attempt, LoginState.failed, error_code=PROVIDER_NOT_ENABLED, detail=message)

    def provider_error(
        self, provider: str, attempt: LoginAttempt, error: str, description: str | None = None
    ) -> CallbackResult:
        """Handle a callback that carries ?error= instead of an authorization code.

        A "provider is not enabled" style error is a configuration error.
        Anything else (including Google's error=access_denied when the person
        declines consent) is a failed sign-in, not an authorization denial.
        """
        if is_provider_disabled_error(error, description):
            return self.provider_not_enabled(provider, attempt, description or error)
        logger.warning("Provider %r returned error=%r description=%r", provider, error, description)
        return self._finish(attempt, LoginState.failed, error_code=OAUTH_FAILED, detail=description or error)

    def failed(self, attempt: LoginAttempt, error_code: str, detail: str | None = None) -> CallbackResult:
        return self._finish(attempt, LoginState.failed, error_code=error_code, detail=detail)

    # ------------------------------------------------------------------
    # Main path
    # ------------------------------------------------------------------

    def handle(self, identity: ProviderIdentity, attempt: LoginAttempt) -> CallbackResult:
        """Find or create the account for a verified identity and decide access.

        attempt must be in processing_callback; anything else is a routing bug
        and raises ValueError before the users table is touched.
        """
        if attempt.state is not LoginState.processing_callback:
            raise ValueError(f"Cannot process a callback from state {attempt.state.value}")
        try:
            user = self._resolve_user(identity)
        except SQLAlchemyError:
            logger.exception("Database failure while resolving user for %s sign-in", identity.provider)
            return self.failed(attempt, BACKEND_ERROR)

        if not user.is_active:
            logger.warning("Sign-in refused for deactivated account id=%s", user.id)
            return self._finish(attempt, LoginState.denied, user=user, error_code=ACCOUNT_DISABLED)

        if not can_access_admin(user.role):
            logger.info("Admin access denied for user id=%s (role=%s)", user.id, user.role)
            return self._finish(attempt, LoginState.denied, user=user, error_code=ACCESS_DENIED)

        try:
            self.store.update_last_login(user.id)
        except SQLAlchemyError:
            logger.exception("Database failure while recording sign-in for user id=%s", user.id)
            return self.failed(attempt, BACKEND_ERROR)

        logger.info("Admin sign-in via %s for user id=%s (role=%s)", identity.provider, user.id, user.role)
        return self._finish(attempt, LoginState.authorized, user=user)

    def _resolve_user(self, identity: ProviderIdentity) -> User:
        """Return the account for this identity, creating it on first sign-in.

        Lookup order: linked provider subject first, then email. A first-time
        Google sign-in for an account created another way (CLI, API, password
        login) links the subject to that row instead of creating a second one.
        """
        user = self.store.get_by_oauth(identity.provider, identity.subject)
        if user is None:
            role = self._role_for(identity.email)
            user, created = self.store.find_or_create(
                User(
                    email=identity.email,
                    name=identity.name,
                    role=role.value,
                    oauth_provider=identity.provider,
                    oauth_subject=identity.subject,
                )
            )
            if created:
                logger.info("Created user id=%s with role=%s on first %s sign-in", user.id, user.role, identity.provider)
            elif user.oauth_subject != identity.subject:
                if user.oauth_subject is not None:
                    logger.warning("Re-linking user id=%s to a new %s subject", user.id, identity.provider)
                self.store.link_oauth(user.id, identity.provider, identity.subject)
                user = self.store.get_by_id(user.id) or user

        if self.settings.rederive_role_on_login:
            role = self._role_for(user.email).value
            if role != user.role:
                logger.info("Role for user id=%s changed %s -> %s by domain policy", user.id, user.role, role)
                self.store.update_user(user.id, role=role)
                user.role = role
        return user

    def _role_for(self, email: str):
        return domain_to_role(
            email,
            admin_domain=self.settings.admin_email_domain,
            super_admin_email=self.settings.super_admin_email,
        )

    @staticmethod
    def _finish(attempt: LoginAttempt, target: LoginState, **fields) -> CallbackResult:
        return CallbackResult(state=attempt.advance(target), **fields)
