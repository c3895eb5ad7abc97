"""Strip secrets and technical noise from error messages before they reach clients."""

from __future__ import annotations

import re
from typing import Any


SENSITIVE_PATTERNS = [
    re.compile(r"[a-z][a-z0-9+.-]*://[^\s/@]+@\S*", re.IGNORECASE),
    re.compile(r"api[_-]?key", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"credential", re.IGNORECASE),
    re.compile(r"authorization", re.IGNORECASE),
    re.compile(r"database[_-]?url", re.IGNORECASE),
    re.compile(r"connection[_-]?string", re.IGNORECASE),
    re.compile(r"\.env", re.IGNORECASE),
    re.compile(r"file[_-]?path", re.IGNORECASE),
    re.compile(r"stack[_-]?trace", re.IGNORECASE),
]

TECHNICAL_DETAILS = [
    re.compile(r"at\s+\w+\.\w+"),
    re.compile(r"Error:\s+", re.IGNORECASE),
    re.compile(r"Exception:\s+", re.IGNORECASE),
    re.compile(r"line\s+\d+", re.IGNORECASE),
    re.compile(r"column\s+\d+", re.IGNORECASE),
    re.compile(r"file:///", re.IGNORECASE),
]

# First match wins.
FRIENDLY_MESSAGES = [
    ("rate limit", "Too many requests. Please try again in a moment."),
    ("unauthorized", "You need to be signed in to perform this action."),
    ("forbidden", "You are not allowed to perform this action."),
    ("not found", "Resource not found."),
    ("timeout", "The request took too long to process. Please try again."),
    ("network", "Connection error. Check your connection and try again."),
    ("invalid", "Invalid data provided."),
    ("validation", "The provided data did not pass validation."),
    ("database", "Could not reach the database. Please try again later."),
    ("storage", "Could not reach storage. Please try again later."),
]

GENERIC_MESSAGE = "Internal server error. Please try again later."
MAX_MESSAGE_LENGTH = 200


def _raw_message(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error or "")


def sanitize_error_message(error: Any, production: bool = True) -> str:
    """Return a client-safe message for ``error``."""
    if not production:
        return _raw_message(error) or "Unknown error"

    message = _raw_message(error) or GENERIC_MESSAGE
    for pattern in SENSITIVE_PATTERNS:
        message = pattern.sub("[REDACTED]", message)
    for pattern in TECHNICAL_DETAILS:
        message = pattern.sub("", message)
    message = re.sub(r"\s+", " ", message).strip()

    lowered = message.lower()
    for needle, friendly in FRIENDLY_MESSAGES:
        if needle in lowered:
            return friendly

    if "[REDACTED]" in message:
        return GENERIC_MESSAGE

    if len(message) > MAX_MESSAGE_LENGTH:
        message = message[:MAX_MESSAGE_LENGTH] + "..."
    return message or GENERIC_MESSAGE
