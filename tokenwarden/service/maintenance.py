from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import RateLimitStore, VerificationCodeStore

logger = get_logger(__name__)

RATE_LIMIT_RETENTION = timedelta(hours=24)


@dataclass(frozen=True)
class CleanupReport:
    verification_codes: int
    rate_limit_windows: int


def cleanup_expired_state(
    store: VerificationCodeStore,
    *,
    rate_limit_store: Optional[RateLimitStore] = None,
    now: Optional[datetime] = None,
    batch_size: int = 500,
) -> CleanupReport:
    """Purge used or expired codes and stale unlocked rate-limit windows.

    Token records are never deleted here; revoked and expired records stay
    for audit.
    """
    current = now or datetime.now(timezone.utc)
    windows_store = rate_limit_store or store
    codes = store.delete_stale_verification_codes(current, batch_size)
    windows = windows_store.delete_stale_rate_limits(
        current - RATE_LIMIT_RETENTION, current, batch_size
    )
    report = CleanupReport(verification_codes=codes, rate_limit_windows=windows)
    logger.info(
        "cleanup_completed",
        verification_codes=codes,
        rate_limit_windows=windows,
    )
    return report


__all__ = ["CleanupReport", "cleanup_expired_state"]
