from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import NotFoundError, ServerError, ValidationError
from tokenwarden.service.notifications import NotificationService
from tokenwarden.service.passwords import CredentialHasher
from tokenwarden.service.rate_limit import RateLimiter
from tokenwarden.service.results import Result, guarded
from tokenwarden.storage.common import AuthStore
from tokenwarden.storage.models import AuditEvent, VerificationCode, new_id

logger = get_logger(__name__)

PASSWORD_CHANGE_PURPOSE = "password_change"


@dataclass(frozen=True)
class CodeRequested:
    expires_at: datetime


class CredentialService:
    """Password change flow guarded by an emailed one-time code."""

    def __init__(
        self,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        notifier: Optional[NotificationService] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.hasher = hasher or CredentialHasher()
        self.notifier = notifier or NotificationService()
        self.rate_limiter = rate_limiter or RateLimiter()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @guarded("register_password_failed")
    async def register_password(
        self, store: AuthStore, principal_id: str, password: str
    ) -> Result[None]:
        """Validate and store an initial password for a principal."""
        self.hasher.validate_password_strength(password)
        if store.get_principal(principal_id) is None:
            raise NotFoundError("principal not found")
        password_hash = await self.hasher.hash_password_async(password)
        store.save_password_hash(principal_id, password_hash)
        return Result.success(None)

    @guarded("password_change_code_failed")
    async def request_password_change_code(
        self, store: AuthStore, principal_id: str
    ) -> Result[CodeRequested]:
        limited = self.rate_limiter.enforce(
            store, principal_id, "password_change_code", now=self._now()
        )
        if not limited.ok:
            return Result.failure(limited.error)
        principal = store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        if not principal.email:
            raise ValidationError("no email address on file")

        now = self._now()
        ttl_minutes = self.settings.verification_code_ttl_minutes
        code = self.hasher.generate_verification_code(self.settings.verification_code_length)
        expires_at = now + timedelta(minutes=ttl_minutes)
        store.invalidate_verification_codes(principal_id, PASSWORD_CHANGE_PURPOSE)
        store.insert_verification_code(
            VerificationCode(
                id=new_id(),
                principal_id=principal_id,
                purpose=PASSWORD_CHANGE_PURPOSE,
                code_hash=self.hasher.hash_verification_code(code),
                expires_at=expires_at,
                created_at=now,
            )
        )
        delivery = await self.notifier.send(
            principal.email, self.notifier.render_password_change_code(code, ttl_minutes)
        )
        if not delivery.ok:
            self.logger.error(
                "password_change_code_delivery_failed",
                principal_id=principal_id,
                error=delivery.error,
            )
            raise ServerError("could not send verification code")
        self.logger.info("password_change_code_sent", principal_id=principal_id)
        return Result.success(CodeRequested(expires_at=expires_at))

    @guarded("password_change_failed")
    async def change_password(
        self, store: AuthStore, principal_id: str, code: str, new_password: str
    ) -> Result[None]:
        limited = self.rate_limiter.enforce(
            store, principal_id, "password_change", now=self._now()
        )
        if not limited.ok:
            return Result.failure(limited.error)
        self.hasher.validate_password_strength(new_password)

        now = self._now()
        stored = store.latest_verification_code(principal_id, PASSWORD_CHANGE_PURPOSE)
        if stored is None or not stored.is_usable(now):
            raise ValidationError("no valid verification code, request a new one")
        if not self.hasher.verification_code_matches((code or "").strip(), stored.code_hash):
            self.logger.warning("password_change_code_mismatch", principal_id=principal_id)
            raise ValidationError("invalid verification code")

        password_hash = await self.hasher.hash_password_async(new_password)
        store.save_password_hash(principal_id, password_hash)
        store.mark_verification_code_used(stored.id)
        self.rate_limiter.reset(store, principal_id, "password_change")
        store.record_audit_event(
            AuditEvent(
                id=new_id(),
                principal_id=principal_id,
                action=PASSWORD_CHANGE_PURPOSE,
                created_at=now,
            )
        )
        self.logger.info("password_changed", principal_id=principal_id)
        return Result.success(None)


__all__ = ["CodeRequested", "CredentialService", "PASSWORD_CHANGE_PURPOSE"]
