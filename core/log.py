"""
core/log.py -- Process-wide logging setup and secret redaction.

All loggers live under the "gentlespace" namespace (gentlespace.api,
gentlespace.auth.callback, ...) and share one root handler configured by
configure_logging().

Security notes:
  [S2] Secrets never reach log output. RedactSecretsFilter is attached to
       every root handler, and to the uvicorn loggers' own handlers. It
       rewrites each record's rendered message, replacing configured secret
       values (OAuth client secret, signing key, database password) with
       [REDACTED]. It runs on the handler, not the
       logger, so records from third-party loggers (authlib, httpx, uvicorn)
       are covered too.

       The filter is skipped only when DEBUG=true AND LOG_SECRETS=true, an
       explicit development-mode toggle validated in core/config.py.

Layer rule: core/ is the kernel. No imports from api/, web/, or auth/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
REDACTED = "[REDACTED]"
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class RedactSecretsFilter(logging.Filter):
    """Replace secret values in a log record with [REDACTED].

    The record's message is rendered once (msg % args), scrubbed, and stored
    back with args cleared, so formatters downstream see only the clean text.
    Exception text is scrubbed as well because tracebacks may contain repr()s
    of request objects carrying credentials.
    """

    def __init__(self, secrets: Iterable[str]) -> None:
        super().__init__()
        # Longest first so a secret that contains another is replaced whole.
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def _scrub(self, text: str) -> str:
        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        scrubbed = self._scrub(message)
        if scrubbed != message or record.args:
            record.msg = scrubbed
            record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self._scrub(record.exc_text)
        return True


def _output_handlers() -> list[logging.Handler]:
    handlers = list(logging.getLogger().handlers)
    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        if not server_logger.propagate:
            handlers.extend(h for h in server_logger.handlers if h not in handlers)
    return handlers


def redaction_enabled(settings: Settings) -> bool:
    return not (settings.debug and settings.log_secrets)


def configure_logging(settings: Settings) -> None:
    """Configure root logging once at startup and install the redaction filter.

    basicConfig is a no-op when handlers already exist (uvicorn, pytest), so
    the filter is attached to whatever root handlers are present afterwards,
    and to the handlers of non-propagating server loggers. `uvicorn asgi:app`
    installs its own handlers on uvicorn, uvicorn.error and uvicorn.access
    with propagate=False, which the root handlers never see.
    Any previous RedactSecretsFilter is replaced so a second call with new
    settings does not stack filters.
    """
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
    logging.getLogger("gentlespace").setLevel(settings.log_level.upper())

    for handler in _output_handlers():
        for existing in [f for f in handler.filters if isinstance(f, RedactSecretsFilter)]:
            handler.removeFilter(existing)
        if redaction_enabled(settings):
            handler.addFilter(RedactSecretsFilter(settings.secret_values()))

    if not redaction_enabled(settings):
        logging.getLogger("gentlespace").warning("LOG_SECRETS is on: secret values are NOT redacted from logs")
