"""
Error taxonomy for the case API.

Each error carries a machine-readable code and the HTTP status it maps to,
so the API layer can render any of them with one exception handler.
"""

from typing import Any, Dict, Optional


class CasedeskError(Exception):
    """Base class for caller-visible failures."""

    status_code = 500
    code = "server_error"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"success": False, "error": self.code, "message": self.message}
        data.update(self.details)
        return data


class RateLimited(CasedeskError):
    """Admission rejection. Recoverable after retry_after_seconds."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after_seconds: int, route: str):
        super().__init__(
            f"Rate limit exceeded for {route}, retry in {retry_after_seconds}s",
            details={"retryAfterSeconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds
        self.route = route


class ValidationRejected(CasedeskError):
    """Caller sent a payload that breaks a domain rule."""

    status_code = 400
    code = "invalid_body"


class NotFound(CasedeskError):
    """Stale or wrong identifier."""

    status_code = 404
    code = "not_found"


class Unauthenticated(CasedeskError):
    """Missing or unrecognized credential."""

    status_code = 401
    code = "invalid_api_key"
