from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit, urlunsplit

URL_TOKEN_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
API_KEY_ASSIGNMENT_RE = re.compile(r"(?i)(api[-_]?key\s*[:=]\s*)([^\s,;\"'&]+)")
API_KEY_QUERY_RE = re.compile(r"(?i)([?&](?:api[-_]?key)=)([^&#\s]+)")
SECRET_FIELD_RE = re.compile(r"(?i)(private[-_]?key|secret|userwalletprivatekey)")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _sanitize_url_token(token: str) -> str:
    candidate = token
    trailing = ""
    while candidate and candidate[-1] in ".,);]}":
        trailing = candidate[-1] + trailing
        candidate = candidate[:-1]

    parsed = urlsplit(candidate)
    if parsed.scheme.lower() in {"http", "https"} and parsed.netloc:
        candidate = urlunsplit((parsed.scheme, parsed.netloc, parsed.path, "", ""))
    return f"{candidate}{trailing}"


def sanitize_text(value: str) -> str:
    masked = URL_TOKEN_RE.sub(lambda match: _sanitize_url_token(match.group(0)), value)
    masked = API_KEY_QUERY_RE.sub(r"\1***", masked)
    masked = API_KEY_ASSIGNMENT_RE.sub(r"\1***", masked)
    return masked


def sanitize_value(value: Any, *, key: str = "") -> Any:
    if key and SECRET_FIELD_RE.search(key):
        return "***"
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {child_key: sanitize_value(child, key=str(child_key)) for child_key, child in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_value(item) for item in value)
    return value


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    extra = {"event": sanitize_value(event)}
    extra.update({key: sanitize_value(value, key=key) for key, value in fields.items()})
    safe_message = sanitize_text(message)

    if level == "exception":
        logger.exception(safe_message, extra=extra)
        return

    logger.log(LOG_LEVELS.get(level, logging.INFO), safe_message, extra=extra)
