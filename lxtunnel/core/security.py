"""Secret masking and input validation."""
from __future__ import annotations

import logging
import re
from typing import Iterable

from lxtunnel.core import actions

logger = logging.getLogger(__name__)


class ValidationPatterns:
    """Allowed shapes for user-supplied tunnel parameters."""

    SUBDOMAIN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
    REGION = re.compile(r"^[a-z]{2}(-[a-z]+)?$")
    PORT = re.compile(
        r"^([1-9][0-9]{0,3}|[1-5][0-9]{4}|6[0-4][0-9]{3}|65[0-4][0-9]{2}"
        r"|655[0-2][0-9]|6553[0-5])$"
    )
    TYPE = re.compile(r"^(http|https|tcp|tls)$")


def _mask(secret: str) -> str:
    """Keep the first and last two characters of long secrets for debugging."""
    if len(secret) > 4:
        return f"{secret[:2]}{'*' * (len(secret) - 4)}{secret[-2:]}"
    return "*" * len(secret)


def sanitize_log_output(data: str, secrets: Iterable[str]) -> str:
    """Mask *secrets* in *data*.

    When no secrets are given, fall back to masking anything that looks like
    a token assignment or bearer credential.
    """
    secrets = [s for s in secrets if s]
    sanitized = data

    for secret in secrets:
        sanitized = sanitized.replace(secret, _mask(secret))

    if not secrets:
        sanitized = re.sub(r"ACCESS_TOKEN=\S+", "ACCESS_TOKEN=***", sanitized)
        sanitized = re.sub(r"LX_ACCESS_TOKEN=\S+", "LX_ACCESS_TOKEN=***", sanitized)
        sanitized = re.sub(
            r"""(token)["\s:=]+["']?([^"'\s]+)["']?""",
            r"\1=***",
            sanitized,
            flags=re.IGNORECASE,
        )
        sanitized = re.sub(r"Bearer\s+\S+", "Bearer ***", sanitized)

    return sanitized


def validate_input(value: str, pattern: re.Pattern[str], field_name: str) -> None:
    """Raise ``ValueError`` unless *value* fully matches *pattern*."""
    if not pattern.match(value):
        raise ValueError(
            f"Invalid {field_name}: {value}. Must match pattern: {pattern.pattern}"
        )


class SecretMaskingFilter(logging.Filter):
    """Rewrites every record's message with :func:`sanitize_log_output`."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets: list[str] = [s for s in secrets if s]

    def add(self, secret: str) -> None:
        if secret and secret not in self._secrets:
            self._secrets.append(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        masked = sanitize_log_output(message, self._secrets)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _masking_filter(handler: logging.Handler) -> SecretMaskingFilter:
    for f in handler.filters:
        if isinstance(f, SecretMaskingFilter):
            return f
    f = SecretMaskingFilter()
    handler.addFilter(f)
    return f


def mask_secrets(secrets: Iterable[str]) -> None:
    """Hide *secrets* from our own log handlers and from the CI runner's log."""
    secrets = [s for s in secrets if s]
    if not secrets:
        return
    handlers = logging.getLogger().handlers
    for handler in handlers:
        masking = _masking_filter(handler)
        for secret in secrets:
            masking.add(secret)
    for secret in secrets:
        actions.set_secret(secret)
    logger.debug("Masking %d secret(s) in log output", len(secrets))
