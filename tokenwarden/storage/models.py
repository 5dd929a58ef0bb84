from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Platform(str, Enum):
    """Client platform a refresh token was issued to."""

    IOS = "ios"
    ANDROID = "android"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Platform":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.lower())
        except ValueError:
            return cls.UNKNOWN


class TokenStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass
class Principal:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenRecord:
    """Persisted state of one refresh token; only its SHA-256 hash is kept."""

    id: str
    principal_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    platform: Platform = Platform.UNKNOWN
    last_used_at: Optional[datetime] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None

    def status(self, now: Optional[datetime] = None) -> TokenStatus:
        # Expired is derived at read time, never written.
        if self.is_revoked:
            return TokenStatus.REVOKED
        if (now or utcnow()) > self.expires_at:
            return TokenStatus.EXPIRED
        return TokenStatus.ACTIVE

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.status(now) is TokenStatus.ACTIVE

    def to_public(self) -> Dict:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "platform": self.platform.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "last_used_at": self.last_used_at,
        }


@dataclass
class VerificationCode:
    id: str
    principal_id: str
    purpose: str
    code_hash: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.used and (now or utcnow()) <= self.expires_at


@dataclass
class RateLimitWindow:
    identity: str
    action: str
    attempts: int
    window_start: datetime
    last_attempt: datetime
    locked_until: Optional[datetime] = None


@dataclass
class AuditEvent:
    id: str
    principal_id: str
    action: str
    created_at: datetime = field(default_factory=utcnow)
    detail: Dict | None = None
