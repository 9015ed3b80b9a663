"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry and identity extraction.

build_oauth(settings) registers Google only when both GOOGLE_CLIENT_ID and
GOOGLE_CLIENT_SECRET are configured. The login template renders the
"Sign in with Google" button from get_enabled_providers().

Security notes:
  [H1] Email verification is mandatory. extract_identity() raises ValueError
       if the provider does not confirm the email is verified.

  Token signatures are verified by authlib during authorize_access_token()
  (id_token validated against Google's published JWKS). This module never
  re-validates them.

  OAuth state parameter (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware. The session stores the state between the authorization
  redirect and the callback.

Supported providers:
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import ProviderIdentity
from auth.roles import normalize_email
from core.config import Settings

logger = logging.getLogger("gentlespace.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"

# Phrases an identity provider or auth layer uses when the sign-in method is
# switched off on its side, e.g. "Unsupported provider: provider is not enabled".
_PROVIDER_DISABLED_MARKERS = (
    "provider is not enabled",
    "unsupported provider",
    "provider_disabled",
)


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth(settings: Settings) -> OAuth:
    """Create the authlib registry for the configured providers."""
    oauth = OAuth()
    if settings.google_enabled:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret.get_secret_value(),
            server_metadata_url=GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered (client_id=%s)", settings.google_client_id)
    else:
        logger.info("Google OAuth provider not configured -- sign-in with Google is disabled")
    return oauth


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return metadata for every configured provider.

    Used by GET /api/v1/auth/providers and the login template.
    Returns list of {"name": str, "label": str} dicts.
    """
    providers: list[dict] = []
    if settings.google_enabled:
        providers.append({"name": "google", "label": "Google"})
    return providers


def is_provider_enabled(settings: Settings, provider: str) -> bool:
    return provider in {p["name"] for p in get_enabled_providers(settings)}


def is_provider_disabled_error(error: str | None, description: str | None = None) -> bool:
    """True when a provider error means "this sign-in method is switched off"."""
    text = f"{error or ''} {description or ''}".lower()
    return any(marker in text for marker in _PROVIDER_DISABLED_MARKERS)


# ---------------------------------------------------------------------------
# Identity extraction [H1]
# ---------------------------------------------------------------------------


def extract_identity(token: dict, provider: str = "google") -> ProviderIdentity:
    """Build a ProviderIdentity from an OIDC token response.

    The id_token claims (parsed by authlib into token["userinfo"]) carry
    email, email_verified, sub and the profile name. The email is only
    accepted when email_verified is True; a missing claim counts as
    unverified.

    The display name falls back to the email's local part when the profile
    has none.

    Raises:
        ValueError: If a verified email or subject cannot be confirmed.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    email = normalize_email(email)
    name = (userinfo.get("name") or "").strip() or email.split("@", 1)[0]
    return ProviderIdentity(email=email, name=name, subject=str(subject), provider=provider)
