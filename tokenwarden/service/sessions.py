from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    NotFoundError,
    TokenExpiredError,
    TokenRevokedError,
    ValidationError,
)
from tokenwarden.service.passwords import CredentialHasher
from tokenwarden.service.rate_limit import RateLimiter
from tokenwarden.service.results import Result, guarded
from tokenwarden.service.secret_generator import SecretGenerator
from tokenwarden.service.tokens import HS256, PlatformToken, TokenCodec
from tokenwarden.service.workers import CryptoWorkerPool
from tokenwarden.storage.common import AuthStore
from tokenwarden.storage.models import Platform, TokenRecord, TokenStatus, new_id

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedTokens:
    token_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class RefreshedTokens:
    token_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    token_type: str = "bearer"


@dataclass(frozen=True)
class AccessClaims:
    principal_id: str
    issued_at: datetime
    expires_at: datetime
    email: Optional[str] = None
    name: Optional[str] = None


class SessionLifecycleManager:
    """Issue, refresh, list and revoke refresh-token backed sessions.

    Every operation takes the store handle as its first argument; the
    manager itself only holds configuration and crypto collaborators.
    Expected failures come back as ``Result`` failures carrying one of the
    ServiceError subclasses.

    Device supersession revokes the old record and then inserts the new one
    as two separate writes. Two concurrent issues for the same device can
    therefore both end up active; the next issue for that device revokes
    both.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        hasher: Optional[CredentialHasher] = None,
        secrets: Optional[SecretGenerator] = None,
        rate_limiter: Optional[RateLimiter] = None,
        signing_pool: Optional[CryptoWorkerPool] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.secrets = secrets or SecretGenerator()
        self.codec = codec or TokenCodec(
            leeway_seconds=settings.token_leeway_seconds, secrets=self.secrets
        )
        self.hasher = hasher or CredentialHasher(secrets=self.secrets)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.signing_pool = signing_pool
        self._clock = clock or _utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def _require_secret(self) -> str:
        if not self.settings.jwt_secret:
            raise ConfigurationError("JWT_SECRET is not configured")
        return self.settings.jwt_secret

    def _mint_access_token(
        self, store: AuthStore, principal_id: str, now: datetime
    ) -> tuple[str, datetime]:
        expires_at = now + self.access_ttl
        claims: Dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        principal = store.get_principal(principal_id)
        if principal is not None:
            if principal.email:
                claims["email"] = principal.email
            if principal.name:
                claims["name"] = principal.name
        return self.codec.encode(claims, self._require_secret(), HS256), expires_at

    def _insert_record(
        self,
        store: AuthStore,
        principal_id: str,
        now: datetime,
        *,
        device_id: Optional[str],
        device_name: Optional[str],
        platform: Platform,
    ) -> tuple[TokenRecord, str]:
        refresh_token = self.secrets.new_opaque_token()
        record = TokenRecord(
            id=new_id(),
            principal_id=principal_id,
            refresh_token_hash=self.hasher.hash_refresh_token(refresh_token),
            created_at=now,
            expires_at=now + self.refresh_ttl,
            device_id=device_id,
            device_name=device_name,
            platform=platform,
        )
        return store.insert_token_record(record), refresh_token

    def _supersede_device(
        self, store: AuthStore, principal_id: str, device_id: str, now: datetime
    ) -> int:
        superseded = 0
        for record in store.find_tokens_by_device(principal_id, device_id):
            if record.is_active(now):
                store.patch_token_record(record.id, is_revoked=True, revoked_at=now)
                superseded += 1
        if superseded:
            self.logger.info(
                "token_superseded",
                principal_id=principal_id,
                device_id=device_id,
                count=superseded,
            )
        return superseded

    @guarded("token_issue_failed")
    def issue(
        self,
        store: AuthStore,
        principal_id: str,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
        platform: Optional[str | Platform] = None,
    ) -> Result[IssuedTokens]:
        """Mint an access token and a refresh token for ``principal_id``.

        With a ``device_id`` every active record for the same device is
        revoked first. The raw refresh token is only ever in the return
        value; the store keeps its SHA-256.
        """
        if not principal_id:
            raise ValidationError("principal id is required")
        self._require_secret()
        now = self._now()
        resolved_platform = (
            platform if isinstance(platform, Platform) else Platform.parse(platform)
        )
        if device_id:
            self._supersede_device(store, principal_id, device_id, now)
        record, refresh_token = self._insert_record(
            store,
            principal_id,
            now,
            device_id=device_id,
            device_name=device_name,
            platform=resolved_platform,
        )
        access_token, access_expires_at = self._mint_access_token(store, principal_id, now)
        self.logger.info(
            "token_issued",
            principal_id=principal_id,
            token_id=record.id,
            device_id=device_id,
            platform=resolved_platform.value,
        )
        return Result.success(
            IssuedTokens(
                token_id=record.id,
                access_token=access_token,
                refresh_token=refresh_token,
                access_expires_at=access_expires_at,
                refresh_expires_at=record.expires_at,
            )
        )

    @guarded("token_refresh_failed")
    def refresh(
        self, store: AuthStore, raw_refresh_token: str, *, rotate: bool = False
    ) -> Result[RefreshedTokens]:
        """Exchange a refresh token for a new access token.

        With ``rotate`` the presented token is revoked and a replacement for
        the same device is returned alongside the access token.
        """
        if not raw_refresh_token:
            raise ValidationError("refresh token is required")
        self._require_secret()
        now = self._now()
        record = store.find_token_by_hash(self.hasher.hash_refresh_token(raw_refresh_token))
        if record is None:
            self.logger.warning("refresh_rejected", reason="not_found")
            raise NotFoundError("refresh token not recognized")
        status = record.status(now)
        if status is TokenStatus.REVOKED:
            self.logger.warning("refresh_rejected", reason="revoked", token_id=record.id)
            raise TokenRevokedError("refresh token has been revoked")
        if status is TokenStatus.EXPIRED:
            self.logger.warning("refresh_rejected", reason="expired", token_id=record.id)
            raise TokenExpiredError("refresh token has expired")

        if not rotate:
            store.patch_token_record(record.id, last_used_at=now)
            access_token, access_expires_at = self._mint_access_token(
                store, record.principal_id, now
            )
            self.logger.info("token_refreshed", token_id=record.id)
            return Result.success(
                RefreshedTokens(
                    token_id=record.id,
                    access_token=access_token,
                    access_expires_at=access_expires_at,
                )
            )

        store.patch_token_record(record.id, is_revoked=True, revoked_at=now, last_used_at=now)
        replacement, refresh_token = self._insert_record(
            store,
            record.principal_id,
            now,
            device_id=record.device_id,
            device_name=record.device_name,
            platform=record.platform,
        )
        access_token, access_expires_at = self._mint_access_token(
            store, record.principal_id, now
        )
        self.logger.info("token_rotated", token_id=record.id, replacement_id=replacement.id)
        return Result.success(
            RefreshedTokens(
                token_id=replacement.id,
                access_token=access_token,
                access_expires_at=access_expires_at,
                refresh_token=refresh_token,
                refresh_expires_at=replacement.expires_at,
            )
        )

    @guarded("token_revoke_failed")
    def revoke(
        self, store: AuthStore, token_id: str, requesting_principal_id: str
    ) -> Result[TokenRecord]:
        """Revoke one record owned by the caller; revoking twice is a no-op."""
        record = store.get_token_record(token_id)
        if record is None:
            raise NotFoundError("token not found")
        if record.principal_id != requesting_principal_id:
            self.logger.warning(
                "token_revoke_forbidden",
                token_id=token_id,
                principal_id=requesting_principal_id,
            )
            raise AuthorizationError("token belongs to another principal")
        if record.is_revoked:
            return Result.success(record)
        updated = store.patch_token_record(
            token_id, is_revoked=True, revoked_at=self._now()
        )
        if updated is None:
            raise NotFoundError("token not found")
        self.logger.info("token_revoked", token_id=token_id, principal_id=record.principal_id)
        return Result.success(updated)

    @guarded("token_revoke_all_failed")
    def revoke_all(self, store: AuthStore, principal_id: str) -> Result[int]:
        now = self._now()
        count = 0
        for record in store.list_tokens_for_principal(principal_id):
            if record.is_active(now):
                store.patch_token_record(record.id, is_revoked=True, revoked_at=now)
                count += 1
        self.logger.info("tokens_revoked_all", principal_id=principal_id, count=count)
        return Result.success(count)

    @guarded("token_list_failed")
    def list_active(self, store: AuthStore, principal_id: str) -> Result[List[Dict[str, Any]]]:
        now = self._now()
        return Result.success(
            [
                record.to_public()
                for record in store.list_tokens_for_principal(principal_id)
                if record.is_active(now)
            ]
        )

    @guarded("token_logout_failed")
    def revoke_refresh_token(self, store: AuthStore, raw_refresh_token: str) -> Result[bool]:
        """Logout by refresh token; unknown or already revoked tokens still succeed."""
        if not raw_refresh_token:
            return Result.success(False)
        record = store.find_token_by_hash(self.hasher.hash_refresh_token(raw_refresh_token))
        if record is None or record.is_revoked:
            return Result.success(False)
        store.patch_token_record(record.id, is_revoked=True, revoked_at=self._now())
        self.logger.info("token_revoked", token_id=record.id, principal_id=record.principal_id)
        return Result.success(True)

    @guarded("login_failed")
    async def login(
        self,
        store: AuthStore,
        email: str,
        password: str,
        *,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> Result[IssuedTokens]:
        if not email or not password:
            raise ValidationError("email and password are required")
        limited = self.rate_limiter.enforce(store, email, "login", now=self._now())
        if not limited.ok:
            return Result.failure(limited.error)
        principal = store.get_principal_by_email(email)
        stored = store.get_password_hash(principal.id) if principal else None
        if principal is None or stored is None:
            self.logger.warning("login_rejected", reason="unknown_principal")
            raise AuthenticationError("invalid email or password")
        if not await self.hasher.verify_password_async(password, stored):
            self.logger.warning("login_rejected", reason="bad_password", principal_id=principal.id)
            raise AuthenticationError("invalid email or password")
        self.rate_limiter.reset(store, email, "login")
        return self.issue(
            store,
            principal.id,
            device_id=device_id,
            device_name=device_name,
            platform=platform,
        )

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    @guarded("authenticate_failed")
    def authenticate(self, authorization: Optional[str]) -> Result[AccessClaims]:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("missing bearer token")
        verified = self.codec.verify(
            token,
            self._require_secret(),
            HS256,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            now=self._now(),
        )
        if not verified.ok:
            return Result.failure(verified.error)
        claims = verified.value or {}
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("token has no subject")
        return Result.success(
            AccessClaims(
                principal_id=subject,
                issued_at=datetime.fromtimestamp(int(claims.get("iat", 0)), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
                email=claims.get("email"),
                name=claims.get("name"),
            )
        )

    @guarded("platform_token_failed")
    async def issue_platform_token(
        self, store: AuthStore, principal_id: str
    ) -> Result[PlatformToken]:
        """RS256 token for the external session verifier."""
        private_key = self.settings.platform_private_key
        if not private_key:
            raise ConfigurationError("PLATFORM_JWT_PRIVATE_KEY is not configured")
        if store.get_principal(principal_id) is None:
            raise NotFoundError("principal not found")
        mint_kwargs = dict(
            issuer=self.settings.effective_platform_issuer,
            audience=self.settings.platform_audience,
            ttl=timedelta(minutes=self.settings.platform_token_ttl_minutes),
            now=self._now(),
        )
        if self.signing_pool is None:
            token = self.codec.mint_platform_token(principal_id, private_key, **mint_kwargs)
        else:
            token = await self.signing_pool.run(
                self.codec.mint_platform_token, principal_id, private_key, **mint_kwargs
            )
        self.logger.info("platform_token_issued", principal_id=principal_id)
        return Result.success(token)


__all__ = [
    "AccessClaims",
    "IssuedTokens",
    "RefreshedTokens",
    "SessionLifecycleManager",
]
