from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from redis import Redis

from tokenwarden.logging import get_logger
from tokenwarden.storage.models import RateLimitWindow

# Windows carry their own timestamps; the key TTL only bounds garbage.
_WINDOW_RETENTION = timedelta(hours=24)


class RedisRateLimitStore:
    """Rate-limit windows kept in Redis so every API worker shares them.

    Updates run inside a WATCH/MULTI transaction, which retries when another
    worker touches the same key between the read and the write.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.client = client
        self.logger = get_logger(__name__)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    @staticmethod
    def _key(identity: str, action: str) -> str:
        # Hash the identity so emails never appear in key names
        digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()
        return f"ratelimit:{action}:{digest}"

    @staticmethod
    def _dumps(window: RateLimitWindow) -> str:
        return json.dumps(
            {
                "identity": window.identity,
                "action": window.action,
                "attempts": window.attempts,
                "window_start": window.window_start.isoformat(),
                "last_attempt": window.last_attempt.isoformat(),
                "locked_until": window.locked_until.isoformat() if window.locked_until else None,
            }
        )

    @staticmethod
    def _loads(raw: Optional[str]) -> Optional[RateLimitWindow]:
        if not raw:
            return None
        data = json.loads(raw)
        locked = data.get("locked_until")
        return RateLimitWindow(
            identity=data["identity"],
            action=data["action"],
            attempts=int(data["attempts"]),
            window_start=datetime.fromisoformat(data["window_start"]),
            last_attempt=datetime.fromisoformat(data["last_attempt"]),
            locked_until=datetime.fromisoformat(locked) if locked else None,
        )

    @staticmethod
    def _ttl_seconds(window: RateLimitWindow) -> int:
        horizon = window.window_start + _WINDOW_RETENTION
        if window.locked_until and window.locked_until > horizon:
            horizon = window.locked_until
        return max(1, int((horizon - datetime.now(timezone.utc)).total_seconds()))

    def get_rate_limit(self, identity: str, action: str) -> Optional[RateLimitWindow]:
        return self._loads(self.client.get(self._key(identity, action)))

    def update_rate_limit(
        self,
        identity: str,
        action: str,
        update: Callable[[Optional[RateLimitWindow]], Optional[RateLimitWindow]],
    ) -> Optional[RateLimitWindow]:
        key = self._key(identity, action)

        def _apply(pipe) -> Optional[RateLimitWindow]:
            current = self._loads(pipe.get(key))
            updated = update(current)
            pipe.multi()
            if updated is None:
                pipe.delete(key)
            else:
                pipe.set(key, self._dumps(updated), ex=self._ttl_seconds(updated))
            return updated

        return self.client.transaction(_apply, key, value_from_callable=True)

    def delete_rate_limit(self, identity: str, action: str) -> None:
        self.client.delete(self._key(identity, action))

    def delete_stale_rate_limits(self, older_than: datetime, now: datetime, limit: int) -> int:
        # Keys expire on their own
        return 0

    def close(self) -> None:
        self.client.close()


__all__ = ["RedisRateLimitStore"]
