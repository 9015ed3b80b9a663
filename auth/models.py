"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these classes only own the shape.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """An account allowed to attempt sign-in to the admin area.

    email is stored normalized (lower-case, stripped) and is UNIQUE in the
    users table; it is the key the Google callback matches on.

    role is one of "user", "admin", "super_admin". It is computed from the
    email domain when the row is created (auth.roles.domain_to_role) and is
    not re-evaluated on later logins unless REDERIVE_ROLE_ON_LOGIN is set.

    hashed_password is None for Google-only accounts (no local password).
    oauth_provider / oauth_subject are filled on the first Google sign-in.
    """

    email: str
    name: str
    role: str  # "user", "admin", "super_admin"
    id: int | None = None
    hashed_password: str | None = None  # None = Google-only account
    oauth_provider: str | None = None  # "google"
    oauth_subject: str | None = None  # provider's stable user ID
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass
class ProviderIdentity:
    """The verified identity asserted by an external provider after a callback.

    Built by auth.oauth.extract_identity() from the token response. Only
    constructed once the provider has confirmed the email address.
    """

    email: str
    name: str
    subject: str  # provider's stable user ID ("sub" claim)
    provider: str = "google"
