"""
auth/roles.py -- Email-domain role policy.

domain_to_role() is a pure function: no I/O, no settings lookup, no database.
The callback handler and the management CLI pass the configured domain and
super-admin address in explicitly, so the policy can be unit tested with
nothing but strings.

Policy (first match wins):
  1. The exact super-admin address          -> super_admin
  2. Any other address at the admin domain  -> admin
  3. Everything else                        -> user (denied the admin area)

Matching is on the full domain after the last "@", case-insensitive.
Sub-domains ("x@mail.gentlespacerealty.com") and look-alike suffixes
("x@gentlespacerealty.com.evil.io") are NOT the admin domain.

Layer rule: no imports from api/ or web/. The default policy constants come
from core/config.py so there is one source for them.
"""

from __future__ import annotations

from enum import Enum

from core.config import DEFAULT_ADMIN_DOMAIN, DEFAULT_SUPER_ADMIN_EMAIL


class Role(str, Enum):
    user = "user"
    admin = "admin"
    super_admin = "super_admin"


ADMIN_ROLES = frozenset({Role.admin, Role.super_admin})


def normalize_email(email: str) -> str:
    """Strip surrounding whitespace and lower-case. Emails are stored in this form."""
    return email.strip().lower()


def domain_to_role(
    email: str,
    *,
    admin_domain: str = DEFAULT_ADMIN_DOMAIN,
    super_admin_email: str = DEFAULT_SUPER_ADMIN_EMAIL,
) -> Role:
    """Return the Role an account with this email is created with."""
    address = normalize_email(email)
    local, sep, domain = address.rpartition("@")
    if not sep or not local or not domain:
        return Role.user
    if address == normalize_email(super_admin_email):
        return Role.super_admin
    if domain == admin_domain.strip().lower():
        return Role.admin
    return Role.user


def can_access_admin(role: str | Role) -> bool:
    """True when the role may reach the admin dashboard."""
    try:
        return Role(role) in ADMIN_ROLES
    except ValueError:
        return False
