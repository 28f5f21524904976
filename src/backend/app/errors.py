from typing import Optional


class AppError(Exception):
    """Base error rendered as ``{"ok": false, "error": code, "detail": message}``."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthError(AppError):
    status_code = 401
    code = "unauthorized"


class ValidationError(AppError):
    status_code = 400
    code = "invalid_request"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class RateLimitedError(AppError):
    status_code = 429
    code = "rate_limited"


class UpstreamFetchError(AppError):
    """Scheduling API or OAuth endpoint failed; the caller is expected to retry."""

    status_code = 502
    code = "upstream_error"


class ConfigError(AppError):
    status_code = 500
    code = "config_error"
