from __future__ import annotations

from typing import Any

MAX_ERROR_MESSAGE_CHARS = 500


def truncate_error(message: str | None, limit: int = MAX_ERROR_MESSAGE_CHARS) -> str | None:
    if message is None:
        return None
    text = str(message).strip()
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


class ProxyError(Exception):
    """Base class for failures that map onto a client-facing HTTP error."""

    status_code: int = 500
    error_type: str = "internal_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_openai_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.status_code,
            },
        }

    def to_claude_payload(self) -> dict[str, Any]:
        return {
            "type": "error",
            "error": {
                "type": self.error_type,
                "message": self.message,
            },
        }


class AuthError(ProxyError):
    status_code = 401
    error_type = "authentication_error"


class QuotaExceeded(ProxyError):
    status_code = 429
    error_type = "rate_limit_error"


class NoAccountAvailable(ProxyError):
    status_code = 503
    error_type = "no_account_available"
    retryable = True


class UpstreamTransientError(ProxyError):
    status_code = 502
    error_type = "upstream_error"
    retryable = True


class UpstreamFatalError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class ValidationError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class InternalError(ProxyError):
    status_code = 500
    error_type = "internal_error"


class NotFoundError(ProxyError):
    status_code = 404
    error_type = "not_found_error"


class ConfigError(ValueError):
    """Raised when a proxy configuration file cannot be loaded or is invalid."""


class CredentialError(RuntimeError):
    """Raised by a credential store when a token refresh fails."""


class ProxyStartError(RuntimeError):
    """Raised when the HTTP listener for a proxy kind cannot be started."""
