"""
Token redaction and sanitization utilities.

SECURITY REQUIREMENTS:
- Slack tokens (xoxb-, xoxp-, xoxa-, xoxr-, xoxe-) NEVER appear in logs
- Audit details never carry secret-named keys or secret-looking values
- IP addresses are stored with the last IPv4 octet masked

Usage:
    from slack_connector.credentials.redaction import sanitize_details

    safe = sanitize_details({"channel": "C123", "access_token": "xoxb-..."})
    # {"channel": "C123"}
"""

import ipaddress
import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"

# Audit detail keys containing any of these terms are dropped outright
FORBIDDEN_DETAIL_TERMS = (
    "token",
    "secret",
    "password",
    "key",
    "credential",
    "authorization",
)

# Log record attributes containing any of these terms are redacted
SECRET_LOG_TERMS = (
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
    "api_key",
    "bearer",
)
# Identifiers and counters are safe to log even when named after a token
SAFE_LOG_KEY_SUFFIXES = ("_id", "_ids", "_type", "_count", "_at")

MAX_DETAIL_STRING_LENGTH = 100
MIN_BASE64_SECRET_LENGTH = 32
MAX_USER_AGENT_LENGTH = 500
MAX_ERROR_MESSAGE_LENGTH = 1000
MAX_DEPTH = 10

SLACK_TOKEN_PATTERN = re.compile(r"xox[abpre]-[A-Za-z0-9-]+")
BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+=*$")

SECRET_VALUE_PATTERNS = [
    (SLACK_TOKEN_PATTERN, REDACTED_VALUE),
    (re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE), f"Bearer {REDACTED_VALUE}"),
    (re.compile(r"token[:\s]+[A-Za-z0-9+/=]+", re.IGNORECASE), f"token: {REDACTED_VALUE}"),
    (re.compile(r"key[:\s]+[A-Za-z0-9+/=]+", re.IGNORECASE), f"key: {REDACTED_VALUE}"),
    (re.compile(r"secret[:\s]+[A-Za-z0-9+/=]+", re.IGNORECASE), f"secret: {REDACTED_VALUE}"),
    (re.compile(r"password[:\s]+[A-Za-z0-9+/=]+", re.IGNORECASE), f"password: {REDACTED_VALUE}"),
]


def is_forbidden_detail_key(key: str) -> bool:
    """Check if an audit detail key must be dropped."""
    key_lower = str(key).lower()
    return any(term in key_lower for term in FORBIDDEN_DETAIL_TERMS)


def is_secret_log_key(key: str) -> bool:
    key_lower = str(key).lower()
    if key_lower.endswith(SAFE_LOG_KEY_SUFFIXES):
        return False
    return any(term in key_lower for term in SECRET_LOG_TERMS)


def looks_like_secret(value: str) -> bool:
    """
    Heuristic for secret-looking strings.

    Long strings and long base64-shaped strings are treated as secrets.
    Short words are base64-shaped too, so they need a minimum length.
    """
    if len(value) > MAX_DETAIL_STRING_LENGTH:
        return True
    if SLACK_TOKEN_PATTERN.search(value):
        return True
    return len(value) >= MIN_BASE64_SECRET_LENGTH and bool(BASE64_PATTERN.match(value))


def redact_secret_patterns(text: str) -> str:
    """Replace token-like substrings in free text with a redaction marker."""
    result = text
    for pattern, replacement in SECRET_VALUE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def sanitize_details(data: Any, _depth: int = 0) -> Any:
    """
    Recursively sanitize audit event details before storage.

    - Keys matching a forbidden term are dropped
    - Secret-looking strings become "[REDACTED]"
    - Nesting beyond MAX_DEPTH is replaced with "[REDACTED]"
    """
    if _depth > MAX_DEPTH:
        return REDACTED_VALUE

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_forbidden_detail_key(key):
                continue
            result[key] = sanitize_details(value, _depth + 1)
        return result

    if isinstance(data, (list, tuple)):
        return [sanitize_details(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return REDACTED_VALUE if looks_like_secret(data) else data

    return data


def mask_ip_address(ip_address: Optional[str]) -> Optional[str]:
    """
    Mask the host part of an address (192.168.1.100 -> 192.168.1.xxx).

    IPv6 keeps its first four groups, taken from the expanded form so
    compressed addresses are masked too. Anything that does not parse
    as an address is fully masked.
    """
    if not ip_address:
        return None
    try:
        parsed = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        return "xxx"
    if parsed.version == 4:
        octets = parsed.exploded.split(".")
        return ".".join(octets[:3]) + ".xxx"
    groups = parsed.exploded.split(":")
    return ":".join(groups[:4]) + "::xxxx"


def truncate_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    if len(user_agent) > MAX_USER_AGENT_LENGTH:
        return user_agent[:MAX_USER_AGENT_LENGTH] + "..."
    return user_agent


def sanitize_error_message(error_message: Optional[str]) -> Optional[str]:
    """Redact token-like substrings, then truncate to 1000 characters."""
    if not error_message:
        return None
    sanitized = redact_secret_patterns(error_message)
    if len(sanitized) > MAX_ERROR_MESSAGE_LENGTH:
        return sanitized[:MAX_ERROR_MESSAGE_LENGTH] + "..."
    return sanitized


def redact_log_data(data: Any, _depth: int = 0) -> Any:
    """Redact secrets from a structure about to be logged."""
    if _depth > MAX_DEPTH:
        return data

    if isinstance(data, dict):
        return {
            key: REDACTED_VALUE if is_secret_log_key(key) else redact_log_data(value, _depth + 1)
            for key, value in data.items()
        }

    if isinstance(data, list):
        return [redact_log_data(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_secret_patterns(data)

    return data


class TokenLoggingFilter(logging.Filter):
    """
    Logging filter that redacts Slack tokens from log records.

    Usage:
        logger.addFilter(TokenLoggingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_secret_patterns(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_log_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_secret_patterns(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        for key in list(record.__dict__.keys()):
            value = record.__dict__[key]
            if is_secret_log_key(key):
                record.__dict__[key] = REDACTED_VALUE
            elif isinstance(value, str):
                record.__dict__[key] = redact_secret_patterns(value)

        return True


def setup_token_logging() -> TokenLoggingFilter:
    """
    Attach the redaction filter to the connector's loggers and to every
    handler on the root logger.

    Logger-level filters do not apply to records from child loggers,
    so the root handlers need the filter too. Call this during startup,
    after logging handlers are configured.
    """
    token_filter = TokenLoggingFilter()

    for logger_name in ("slack_connector", "audit.fallback"):
        logging.getLogger(logger_name).addFilter(token_filter)

    for handler in logging.getLogger().handlers:
        handler.addFilter(token_filter)

    logger.info("Token logging configured with redaction filter")
    return token_filter
