"""
Secret redaction for logs.

Session tokens, PINs, credential hashes, the cron secret, API keys and the
field encryption key must never reach log output. Install the filter once on
the root handlers (main.py does this):

    for handler in logging.getLogger().handlers:
        handler.addFilter(SecretRedactingFilter())
"""

import logging
import re
from typing import Any

# Record attributes / dict keys whose values are always masked
SECRET_KEY_PATTERNS = [
    re.compile(r"(api[_-]?key)", re.IGNORECASE),
    re.compile(r"(session[_-]?token)", re.IGNORECASE),
    re.compile(r"(token[_-]?hash)", re.IGNORECASE),
    re.compile(r"(credential)", re.IGNORECASE),
    re.compile(r"(^pin$|_pin$)", re.IGNORECASE),
    re.compile(r"(password)", re.IGNORECASE),
    re.compile(r"(cron[_-]?secret)", re.IGNORECASE),
    re.compile(r"(encryption[_-]?key)", re.IGNORECASE),
    re.compile(r"(database[_-]?(service[_-]?)?url)", re.IGNORECASE),
    re.compile(r"(authorization)", re.IGNORECASE),
]

# Secret-looking substrings inside free text
SECRET_VALUE_PATTERNS = [
    re.compile(r"(Bearer\s+[a-zA-Z0-9._~+/=-]+)"),
    re.compile(r"(enc:v1:[a-zA-Z0-9_=-]+)"),
    re.compile(r"(postgres(?:ql)?://[^:\s]+:[^@\s]+@)"),
]

REDACTED_VALUE = "[REDACTED]"


def is_secret_key(key: str) -> bool:
    return any(pattern.search(key) for pattern in SECRET_KEY_PATTERNS)


def redact_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    result = value
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_secrets(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact secrets from a data structure.

    Usage:
        logger.info("Request data", extra=redact_secrets(payload))
    """
    if _depth > 10:
        return data

    if isinstance(data, dict):
        return {
            key: REDACTED_VALUE if is_secret_key(str(key)) else redact_secrets(value, _depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_secrets(item, _depth + 1) for item in data]
    if isinstance(data, str):
        return redact_value(data)
    return data


class SecretRedactingFilter(logging.Filter):
    """Logging filter that redacts secrets from message, args and extra fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_secrets(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(redact_value(arg) for arg in record.args)

        for key in list(record.__dict__.keys()):
            if is_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif key in ("error", "details"):
                setattr(record, key, redact_secrets(getattr(record, key)))

        return True
