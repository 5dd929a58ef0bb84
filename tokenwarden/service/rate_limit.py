from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import RateLimitedError, ValidationError
from tokenwarden.service.results import Result
from tokenwarden.storage.common import RateLimitStore, normalize_email
from tokenwarden.storage.models import RateLimitWindow


@dataclass(frozen=True)
class RateLimitRule:
    window: timedelta
    max_attempts: int
    lockout: timedelta


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    locked_until: Optional[datetime] = None


def _minutes(value: int) -> timedelta:
    return timedelta(minutes=value)


# Actions keyed by email address
EMAIL_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "otp_send": RateLimitRule(_minutes(60), 5, _minutes(60)),
    "otp_verify": RateLimitRule(_minutes(15), 5, _minutes(30)),
    "password_reset": RateLimitRule(_minutes(60), 3, _minutes(60)),
    "signup": RateLimitRule(_minutes(60), 5, _minutes(60)),
    "login": RateLimitRule(_minutes(15), 10, _minutes(15)),
}

# Actions keyed by principal id
PRINCIPAL_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "password_change_code": RateLimitRule(_minutes(60), 5, _minutes(60)),
    "password_change": RateLimitRule(_minutes(15), 5, _minutes(30)),
    "refresh_repository": RateLimitRule(_minutes(1), 30, _minutes(1)),
    "build_paper": RateLimitRule(_minutes(1), 20, _minutes(1)),
    "refresh_all_repositories": RateLimitRule(_minutes(5), 5, _minutes(5)),
}

DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {**EMAIL_RATE_LIMITS, **PRINCIPAL_RATE_LIMITS}


class RateLimiter:
    """Fixed-window attempt counter with a lockout once the window is spent.

    With ``max_attempts`` N, checks 1..N inside a window are allowed and
    check N+1 sets the lock. While locked every check is refused; the first
    check after the lock lifts starts a fresh window.
    """

    def __init__(
        self,
        rules: Optional[Dict[str, RateLimitRule]] = None,
        *,
        store: Optional[RateLimitStore] = None,
    ) -> None:
        self.rules = dict(rules if rules is not None else DEFAULT_RATE_LIMITS)
        # Shared backend (e.g. Redis) taking precedence over per-call stores
        self.store = store
        self.logger = get_logger(__name__)

    def _rule(self, action: str) -> RateLimitRule:
        rule = self.rules.get(action)
        if rule is None:
            raise ValidationError(f"unknown rate limit action {action}")
        return rule

    def _backend(self, store: RateLimitStore) -> RateLimitStore:
        return self.store or store

    @staticmethod
    def _identity(identity: str, action: str) -> str:
        if action in EMAIL_RATE_LIMITS:
            return normalize_email(identity)
        return identity

    def check(
        self,
        store: RateLimitStore,
        identity: str,
        action: str,
        *,
        now: Optional[datetime] = None,
    ) -> RateLimitDecision:
        """Count one attempt and report whether it may proceed."""
        rule = self._rule(action)
        key = self._identity(identity, action)
        current_time = now or datetime.now(timezone.utc)
        outcome: dict[str, RateLimitDecision] = {}

        def _update(window: Optional[RateLimitWindow]) -> RateLimitWindow:
            if window and window.locked_until and current_time < window.locked_until:
                outcome["decision"] = RateLimitDecision(False, 0, window.locked_until)
                return window
            lock_elapsed = bool(window and window.locked_until)
            if (
                window is None
                or lock_elapsed
                or current_time - window.window_start > rule.window
            ):
                outcome["decision"] = RateLimitDecision(True, rule.max_attempts - 1)
                return RateLimitWindow(
                    identity=key,
                    action=action,
                    attempts=1,
                    window_start=current_time,
                    last_attempt=current_time,
                )
            if window.attempts >= rule.max_attempts:
                locked_until = current_time + rule.lockout
                outcome["decision"] = RateLimitDecision(False, 0, locked_until)
                window.locked_until = locked_until
                window.last_attempt = current_time
                return window
            window.attempts += 1
            window.last_attempt = current_time
            outcome["decision"] = RateLimitDecision(
                True, max(0, rule.max_attempts - window.attempts)
            )
            return window

        self._backend(store).update_rate_limit(key, action, _update)
        decision = outcome["decision"]
        if not decision.allowed:
            self.logger.warning(
                "rate_limit_locked",
                action=action,
                locked_until=decision.locked_until.isoformat() if decision.locked_until else None,
            )
        return decision

    def enforce(
        self,
        store: RateLimitStore,
        identity: str,
        action: str,
        *,
        now: Optional[datetime] = None,
    ) -> Result[RateLimitDecision]:
        decision = self.check(store, identity, action, now=now)
        if decision.allowed:
            return Result.success(decision)
        return Result.failure(
            RateLimitedError(
                "too many attempts, try again later", retry_at=decision.locked_until
            )
        )

    def reset(self, store: RateLimitStore, identity: str, action: str) -> None:
        """Forget the window, e.g. after a successful verification."""
        self._rule(action)
        self._backend(store).delete_rate_limit(self._identity(identity, action), action)


__all__ = [
    "DEFAULT_RATE_LIMITS",
    "EMAIL_RATE_LIMITS",
    "PRINCIPAL_RATE_LIMITS",
    "RateLimitDecision",
    "RateLimitRule",
    "RateLimiter",
]
