"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the admin service happen here. No module
should call os.getenv() or os.environ.get() directly.

Design patterns used:
  Explicit settings object: load_settings() builds one validated Settings
      instance at process start. create_app(settings) stores it on
      app.state.settings and hands it to the components that need it (OAuth
      registry, token helpers, callback handler). Nothing reads a module-level
      global, so tests can build an app with any configuration they like.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Configuration errors abort startup here,
      before any request is served.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright.

  [M7] Outside DEBUG mode a missing SECRET_KEY is a hard startup failure.

  [S1] google_client_secret is a SecretStr. Its repr() and str() print
       '**********', so an accidental log of the Settings object never leaks it.
       Only the OAuth registry calls get_secret_value().

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from urllib.parse import urlparse

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

logger = logging.getLogger("gentlespace.config")

DEFAULT_ADMIN_DOMAIN = "gentlespacerealty.com"
DEFAULT_SUPER_ADMIN_EMAIL = "admin@gentlespacerealty.com"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: SecretStr = SecretStr("")
    database_url: str = "sqlite:///gentlespace_admin.db"

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    log_level: str = "INFO"
    # Development-only escape hatch: disables secret redaction in log output.
    # Rejected unless DEBUG=true.
    log_secrets: bool = False

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # Google sign-in (empty means the provider is not enabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""  # public, safe for client-side exposure
    google_client_secret: SecretStr = SecretStr("")
    # Must match the redirect URI registered with Google exactly. Empty means
    # "derive from the incoming request" (local development).
    oauth_redirect_uri: str = ""

    # ------------------------------------------------------------------
    # Role policy
    # ------------------------------------------------------------------

    admin_email_domain: str = DEFAULT_ADMIN_DOMAIN
    super_admin_email: str = DEFAULT_SUPER_ADMIN_EMAIL
    rederive_role_on_login: bool = False

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    rate_limit: str = "100 per 15 minutes"
    static_cache_seconds: int = 24 * 60 * 60
    api_cache_seconds: int = 5 * 60
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6] [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key.get_secret_value():
            if self.debug:
                self.secret_key = SecretStr(secrets.token_hex(32))
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key.get_secret_value()) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_google_credentials(self) -> "Settings":
        """Reject a half-configured Google client.

        Both values empty disables the provider (the login page hides the
        button and the callback reports "provider not enabled"). One without
        the other is an operator mistake and must fail loudly at startup.
        """
        has_id = bool(self.google_client_id)
        has_secret = bool(self.google_client_secret.get_secret_value())
        if has_id != has_secret:
            missing = "GOOGLE_CLIENT_SECRET" if has_id else "GOOGLE_CLIENT_ID"
            raise ValueError(f"Google sign-in is partially configured: {missing} is not set.")
        if self.oauth_redirect_uri:
            parsed = urlparse(self.oauth_redirect_uri)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValueError("OAUTH_REDIRECT_URI must be an absolute http(s) URL.")
        return self

    @model_validator(mode="after")
    def validate_log_secrets(self) -> "Settings":
        if self.log_secrets and not self.debug:
            raise ValueError("LOG_SECRETS may only be enabled together with DEBUG=true.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret.get_secret_value())

    def secret_values(self) -> list[str]:
        """Return every configured secret, for the log redaction filter."""
        values = [
            self.secret_key.get_secret_value(),
            self.google_client_secret.get_secret_value(),
        ]
        try:
            password = make_url(self.database_url).password
        except ArgumentError:  # malformed URLs fail later in create_engine
            password = None
        if password:
            values.append(str(password))
        return [v for v in values if v]


def load_settings(**overrides) -> Settings:
    """Build the process-wide Settings object.

    Call exactly once at startup (asgi.py, main.py) and pass the result down.
    Keyword overrides take precedence over environment values and exist for
    tests and the management CLI.
    """
    return Settings(**overrides)
