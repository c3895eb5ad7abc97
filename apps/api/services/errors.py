"""Service-level error taxonomy rendered by the API exception handler."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ImageniusError(Exception):
    """Base error carrying a user-safe message and an HTTP status.

    ``detail`` is internal context for logs; it is never shown to callers
    in production.
    """

    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.context = context or {}


class AuthError(ImageniusError):
    status_code = 401


class ValidationError(ImageniusError):
    status_code = 400


class InsufficientCredits(ImageniusError):
    status_code = 402


class IdentityNotFound(ImageniusError):
    status_code = 404


class RateLimitExceeded(ImageniusError):
    status_code = 429

    def __init__(self, message: str, retry_after: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = max(int(retry_after), 1)


class UpstreamError(ImageniusError):
    """Payment processor, generative API or database failure."""

    status_code = 500


class InvalidSignature(ValidationError):
    """Webhook payload could not be authenticated."""
