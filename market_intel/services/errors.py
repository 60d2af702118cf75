from __future__ import annotations

import re

_MAX_MESSAGE_LENGTH = 200

_SENSITIVE_PATTERNS = [
    re.compile(r"[A-Za-z]:\\[^\s]*"),
    re.compile(r"/[^/\s]+/[^/\s]+[^\s]*"),
    re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"),
    re.compile(r"localhost:\d+"),
    # Credential words, not substrings of longer words ("api_key" yes, "monkey" no).
    re.compile(r"(?<![A-Za-z])(?:password|secret|token|key)s?(?![A-Za-z])", re.IGNORECASE),
    re.compile(r"database", re.IGNORECASE),
    re.compile(r"sql", re.IGNORECASE),
    re.compile(r"mongodb", re.IGNORECASE),
    re.compile(r"redis", re.IGNORECASE),
    re.compile(r"ECONNREFUSED|ENOTFOUND|ETIMEDOUT", re.IGNORECASE),
]


def sanitize_error_message(message: str) -> str:
    """Redact paths, addresses and credential-like words before a message leaves the API."""
    sanitized = str(message or "")
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[REDACTED]", sanitized)
    if len(sanitized) > _MAX_MESSAGE_LENGTH:
        sanitized = sanitized[:_MAX_MESSAGE_LENGTH] + "..."
    return sanitized


class MarketIntelError(Exception):
    status_code = 500
    code = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(MarketIntelError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Validation failed: {', '.join(self.errors)}")


class NotFoundError(MarketIntelError):
    status_code = 404
    code = "NOT_FOUND"


class UnknownError(MarketIntelError):
    status_code = 500
    code = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(sanitize_error_message(message), code=code)


class ProviderError(Exception):
    """Raised by the data provider client; `retryable` marks transient network failures."""

    def __init__(self, message: str, retryable: bool = False, status: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status
