"""Store contracts shared by the memory, postgres and redis backends.

Each operation is atomic for the single record it touches. Nothing here
offers cross-record transactions; callers that chain writes (device
supersession, code consumption) accept the window between them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol

from tokenwarden.storage.models import (
    AuditEvent,
    Principal,
    RateLimitWindow,
    TokenRecord,
    VerificationCode,
)

# Fields a token record patch may touch
TOKEN_PATCH_FIELDS = frozenset({"is_revoked", "revoked_at", "last_used_at"})


class TokenStore(Protocol):
    def insert_token_record(self, record: TokenRecord) -> TokenRecord: ...

    def patch_token_record(self, token_id: str, **changes: Any) -> Optional[TokenRecord]: ...

    def get_token_record(self, token_id: str) -> Optional[TokenRecord]: ...

    def find_token_by_hash(self, refresh_token_hash: str) -> Optional[TokenRecord]: ...

    def find_tokens_by_device(self, principal_id: str, device_id: str) -> List[TokenRecord]: ...

    def list_tokens_for_principal(self, principal_id: str) -> List[TokenRecord]: ...


class CredentialStore(Protocol):
    def create_principal(
        self, email: Optional[str], name: Optional[str] = None
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def save_password_hash(self, principal_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, principal_id: str) -> Optional[str]: ...


class VerificationCodeStore(Protocol):
    def insert_verification_code(self, code: VerificationCode) -> VerificationCode: ...

    def latest_verification_code(
        self, principal_id: str, purpose: str
    ) -> Optional[VerificationCode]: ...

    def mark_verification_code_used(self, code_id: str) -> None: ...

    def invalidate_verification_codes(self, principal_id: str, purpose: str) -> int: ...

    def delete_stale_verification_codes(self, now: datetime, limit: int) -> int: ...


class RateLimitStore(Protocol):
    def get_rate_limit(self, identity: str, action: str) -> Optional[RateLimitWindow]: ...

    def update_rate_limit(
        self,
        identity: str,
        action: str,
        update: Callable[[Optional[RateLimitWindow]], Optional[RateLimitWindow]],
    ) -> Optional[RateLimitWindow]:
        """Atomically replace the window with ``update(current)``; None deletes it."""
        ...

    def delete_rate_limit(self, identity: str, action: str) -> None: ...

    def delete_stale_rate_limits(self, older_than: datetime, now: datetime, limit: int) -> int: ...


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(self, principal_id: str) -> List[AuditEvent]: ...


class AuthStore(
    TokenStore, CredentialStore, VerificationCodeStore, RateLimitStore, AuditStore, Protocol
):
    """Everything the lifecycle services need from one store handle."""


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


__all__ = [
    "AuditStore",
    "AuthStore",
    "CredentialStore",
    "RateLimitStore",
    "TOKEN_PATCH_FIELDS",
    "TokenStore",
    "VerificationCodeStore",
    "normalize_email",
]
