"""Shared error classification for worker output and session retries.

Classification is table-driven: :data:`CLASSIFICATION_TABLE` is scanned top to
bottom and the first row with a matching pattern wins.  Usage-limit rows come
before rate-limit rows because usage-limit messages also mention "limit".
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    USAGE_LIMIT = "usage_limit"
    TIMEOUT = "timeout"
    FATAL = "fatal"
    TRANSIENT = "transient"


USAGE_LIMIT_PATTERNS: tuple[str, ...] = (
    "claude ai usage limit",
    "usage limit reached",
    "quota exceeded",
    "monthly usage limit",
    "daily usage limit",
    "account usage limit",
    "api usage limit",
)

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "requests per",
    "429",
    "throttled",
    "rate exceeded",
)

TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "etimedout",
)

FATAL_PATTERNS: tuple[str, ...] = (
    "authentication failed",
    "invalid api key",
    "unauthorized",
    "forbidden",
    "account suspended",
    "enospc",
    "enomem",
)

CLASSIFICATION_TABLE: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.USAGE_LIMIT, USAGE_LIMIT_PATTERNS),
    (ErrorKind.RATE_LIMIT, RATE_LIMIT_PATTERNS),
    (ErrorKind.TIMEOUT, TIMEOUT_PATTERNS),
    (ErrorKind.FATAL, FATAL_PATTERNS),
)

# Matched case-sensitively against the raw message.
CRITICAL_FAILURE_PATTERNS: tuple[str, ...] = (
    "ENOSPC",
    "ENOMEM",
    "Repository not found",
    "Authentication failed",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def _message_of(error: BaseException | str) -> str:
    return error if isinstance(error, str) else str(error)


def classify(error: BaseException | str) -> ErrorKind:
    """Return the :class:`ErrorKind` for an exception or raw error text."""
    message = _message_of(error)
    if not message:
        return ErrorKind.TRANSIENT
    for kind, patterns in CLASSIFICATION_TABLE:
        if _contains_any(message, patterns):
            return kind
    return ErrorKind.TRANSIENT


def looks_like_usage_limit(text: str) -> bool:
    if not text:
        return False
    return _contains_any(text, USAGE_LIMIT_PATTERNS)


def looks_like_rate_limit(text: str) -> bool:
    """Return ``True`` when text matches a rate limit (but not a usage limit)."""
    if not text:
        return False
    if looks_like_usage_limit(text):
        return False
    return _contains_any(text, RATE_LIMIT_PATTERNS)


def is_critical_failure(error: BaseException | str) -> bool:
    """Return ``True`` for failures that must stop the whole session."""
    message = _message_of(error)
    return any(pattern in message for pattern in CRITICAL_FAILURE_PATTERNS)
