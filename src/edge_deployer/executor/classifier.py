"""Failure classification for backend command output."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    CREDENTIALS = "credentials"
    NETWORK = "network"
    SERVER = "server"
    BUNDLE = "bundle"
    DATABASE = "database"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.NETWORK,
    ErrorCategory.SERVER,
})

# 按顺序匹配，先命中的分类优先
_PATTERNS = [
    (ErrorCategory.RATE_LIMIT, ("429", "rate limit", "too many requests")),
    (ErrorCategory.CREDENTIALS, (
        "credential", "unauthorized", "forbidden", "authentication",
        "permission denied", "not authorized", "api token", "401", "403",
    )),
    (ErrorCategory.BUNDLE, (
        "syntax", "compile", "build failed", "module not found", "malformed", "parse error",
    )),
    (ErrorCategory.NETWORK, (
        "timeout", "timed out", "network", "econnreset", "econnrefused",
        "enotfound", "etimedout", "fetch failed", "socket hang up", "connection reset",
    )),
    (ErrorCategory.SERVER, (
        "500", "502", "503", "504", "internal server error",
        "service unavailable", "bad gateway", "temporarily unavailable",
    )),
    (ErrorCategory.DATABASE, ("database", "d1", "migration", "sql")),
]

_SUGGESTIONS: Dict[ErrorCategory, List[str]] = {
    ErrorCategory.RATE_LIMIT: ["Wait a moment and retry", "Lower the concurrency limit"],
    ErrorCategory.CREDENTIALS: [
        "Check CLOUDFLARE_API_TOKEN and CLOUDFLARE_ACCOUNT_ID",
        "Verify the token has not expired",
    ],
    ErrorCategory.NETWORK: ["Check internet connectivity", "Check for firewall/proxy issues"],
    ErrorCategory.SERVER: ["The backend is degraded; retry later"],
    ErrorCategory.BUNDLE: ["Check for syntax errors in the worker code", "Run the build locally"],
    ErrorCategory.DATABASE: [
        "Verify the database exists",
        "Check migrations are valid SQL",
        "Ensure the D1 binding name matches wrangler.toml",
    ],
    ErrorCategory.UNKNOWN: ["Check the error message for details", "Review deployment logs"],
}


def classify_error(message: str) -> ErrorCategory:
    """Classify a failure message into an error category."""
    text = (message or "").lower()
    for category, needles in _PATTERNS:
        if any(needle in text for needle in needles):
            return category
    return ErrorCategory.UNKNOWN


def is_retryable(message: str) -> bool:
    return classify_error(message) in RETRYABLE_CATEGORIES


def recovery_suggestions(category: ErrorCategory) -> List[str]:
    return list(_SUGGESTIONS.get(category, _SUGGESTIONS[ErrorCategory.UNKNOWN]))
