from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit, urlunsplit

MASK = "***"

URL_TOKEN_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
# Hosted RPC endpoints (Infura, Alchemy, QuickNode) carry the project key as a
# path segment. Hex values such as tx hashes are left alone.
RPC_PATH_KEY_RE = re.compile(r"^(?!0x)[A-Za-z0-9_-]{24,}$")
TEXT_SECRET_RES = (
    re.compile(r"(?i)([?&]api[-_]?key=)[^&#\s]+"),
    re.compile(r"(?i)(api[-_]?key\s*[:=]\s*)[^\s,;\"'&]+"),
    # Tx hashes are also 32 bytes of hex; only values labelled as keys are masked.
    re.compile(r"(?i)((?:private[-_]?key|secret)\s*[:=]\s*)(?:0x)?[0-9a-f]{64}"),
)
SENSITIVE_FIELD_NAMES = frozenset({"private_key", "signer_private_keys", "executor_private_key"})

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "exception": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _redact_url(token: str) -> str:
    trailing = ""
    while token and token[-1] in ".,);]}":
        token, trailing = token[:-1], token[-1] + trailing

    parts = urlsplit(token)
    if parts.scheme.lower() not in {"http", "https"} or not parts.netloc:
        return token + trailing
    path = "/".join(MASK if RPC_PATH_KEY_RE.match(segment) else segment for segment in parts.path.split("/"))
    return urlunsplit((parts.scheme, parts.netloc, path, "", "")) + trailing


def sanitize_text(value: str) -> str:
    masked = URL_TOKEN_RE.sub(lambda match: _redact_url(match.group(0)), value)
    for pattern in TEXT_SECRET_RES:
        masked = pattern.sub(rf"\g<1>{MASK}", masked)
    return masked


def sanitize_field(key: str, value: Any) -> Any:
    if key in SENSITIVE_FIELD_NAMES:
        return MASK
    return sanitize_value(value)


def sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {key: sanitize_field(key, child) for key, child in value.items()}
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(sanitize_value(item) for item in value)
    return value


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    """Log ``message`` with ``event`` and ``fields`` as structured extras, secrets masked."""
    extra = {"event": sanitize_text(event)}
    extra.update({key: sanitize_field(key, value) for key, value in fields.items()})
    logger.log(
        LOG_LEVELS.get(level, logging.INFO),
        sanitize_text(message),
        exc_info=level == "exception",
        extra=extra,
    )
