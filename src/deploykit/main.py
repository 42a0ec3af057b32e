"""Structured logging for pipeline steps.

Every step logs JSON lines to stderr so CI log collectors can index fields
like ``reason`` or ``can_deploy``. Tokens handed to ``setup_logging`` are
masked wherever they appear in a record.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, TextIO

MASK = "***"
HANDLER_NAME = "deploykit"

# LogRecord attributes that are not user-supplied ``extra`` fields
RESERVED_RECORD_ATTRIBUTES = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in RESERVED_RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class SecretMaskingFilter(logging.Filter):
    """Replace known secret values in messages and extra fields."""

    def __init__(self, secrets: Iterable[str | None]) -> None:
        super().__init__()
        # Longest first so a token containing another token is fully masked
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def mask(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True

        record.msg = self.mask(record.getMessage())
        record.args = None
        for key, value in list(record.__dict__.items()):
            if key not in RESERVED_RECORD_ATTRIBUTES and isinstance(value, str):
                setattr(record, key, self.mask(value))
        return True


def setup_logging(
    level: str | int = logging.INFO,
    *,
    json_output: bool = True,
    secrets: Iterable[str | None] = (),
    stream: TextIO | None = None,
) -> None:
    """Configure root logging for a pipeline step.

    Args:
        level: Root log level.
        json_output: JSON lines when True, plain text otherwise.
        secrets: Values to mask in every record (bot tokens, API tokens).
        stream: Log destination. Defaults to stderr, stdout carries
            command output such as shell exports.
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    handler.addFilter(SecretMaskingFilter(secrets))
    handler.set_name(HANDLER_NAME)

    root_logger = logging.getLogger()
    # Replace a handler from an earlier call, leave foreign handlers alone
    for existing in list(root_logger.handlers):
        if existing.get_name() == HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Request lines include the bot token in the URL
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
