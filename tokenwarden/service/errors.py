from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer errors mapped to HTTP responses.

    Each class carries a stable ``error_code`` and the HTTP ``status_code``
    the API layer answers with:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - configuration_error / server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed validation (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Caller is authenticated but does not own the resource (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded; ``retry_at`` says when the lock lifts (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many attempts",
        *,
        retry_at: Optional[datetime] = None,
        detail: Optional[dict] = None,
    ) -> None:
        detail = dict(detail or {})
        if retry_at is not None:
            detail.setdefault("retry_at", retry_at.isoformat())
        super().__init__(message, detail=detail)
        self.retry_at = retry_at


class CryptoError(ServiceError):
    """A cryptographic check failed (401)."""
    status_code = 401
    error_code = "invalid_signature"


class ConfigurationError(ServiceError):
    """Required configuration such as key material is absent (500)."""
    status_code = 500
    error_code = "configuration_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidTokenFormatError(ValidationError):
    """Token is not three base64url JSON segments."""
    error_code = "invalid_format"


class InvalidSignatureError(CryptoError):
    """Token signature does not verify under the configured key."""
    pass


class InvalidClaimsError(AuthenticationError):
    """Issuer or audience claim does not match."""
    error_code = "invalid_claims"


class TokenExpiredError(AuthenticationError):
    """Token or record is past its expiry."""
    error_code = "token_expired"


class TokenRevokedError(AuthenticationError):
    """Refresh token record has been revoked."""
    error_code = "token_revoked"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "RateLimitedError",
    "CryptoError",
    "ConfigurationError",
    "ServerError",
    "InvalidTokenFormatError",
    "InvalidSignatureError",
    "InvalidClaimsError",
    "TokenExpiredError",
    "TokenRevokedError",
]
