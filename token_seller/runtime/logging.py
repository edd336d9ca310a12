from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from token_seller.common.logging import LOG_LEVELS, sanitize_text, sanitize_value

LOGGER_NAME = "token_seller"

STANDARD_LOG_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_text(record.getMessage()),
        }

        for key, value in record.__dict__.items():
            if key in STANDARD_LOG_FIELDS or key.startswith("_"):
                continue
            if key in {"message", "asctime"}:
                continue
            payload[key] = sanitize_value(value, key=key)

        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(level: str = "info") -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(LOG_LEVELS.get(level.strip().lower(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger
