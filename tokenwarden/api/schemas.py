from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "configuration_error",
    "invalid_format",
    "invalid_signature",
    "invalid_claims",
    "token_expired",
    "token_revoked",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class DeviceInfo(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=256)
    device_name: Optional[str] = Field(default=None, max_length=256)
    platform: Optional[str] = Field(default=None, max_length=16)


class EmailLoginRequest(DeviceInfo):
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=256)
    rotate: bool = False


class RevokeRequest(BaseModel):
    refresh_token: str = Field(..., max_length=256)


class PasswordChangeRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=12)
    new_password: str = Field(..., max_length=1024)


class TokenPairResponse(BaseModel):
    token_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class RefreshResponse(BaseModel):
    token_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    token_type: str = "bearer"


class TokenInfo(BaseModel):
    id: str
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    platform: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None


class TokenListResponse(BaseModel):
    items: List[TokenInfo]


class RevokeAllResponse(BaseModel):
    revoked: int


class PlatformTokenResponse(BaseModel):
    token: str
    expires_at: datetime


class CodeRequestedResponse(BaseModel):
    expires_at: datetime
