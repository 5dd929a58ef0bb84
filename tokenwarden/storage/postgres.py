from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import TOKEN_PATCH_FIELDS, normalize_email
from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.models import (
    AuditEvent,
    Platform,
    Principal,
    RateLimitWindow,
    TokenRecord,
    VerificationCode,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE,
        name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_record (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        device_id TEXT,
        device_name TEXT,
        platform TEXT NOT NULL DEFAULT 'unknown',
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_record_principal_device_idx ON token_record (principal_id, device_id)",
    """
    CREATE TABLE IF NOT EXISTS verification_code (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL,
        purpose TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS verification_code_principal_idx ON verification_code (principal_id, purpose)",
    """
    CREATE TABLE IF NOT EXISTS rate_limit_window (
        identity TEXT NOT NULL,
        action TEXT NOT NULL,
        attempts INTEGER NOT NULL,
        window_start TIMESTAMPTZ NOT NULL,
        last_attempt TIMESTAMPTZ NOT NULL,
        locked_until TIMESTAMPTZ,
        PRIMARY KEY (identity, action)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL,
        action TEXT NOT NULL,
        detail JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store; every write is a single statement or transaction."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- principals & credentials ------------------------------------------------

    def _principal_from_row(self, row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row.get("email"),
            name=row.get("name"),
            created_at=row["created_at"],
        )

    def create_principal(self, email: Optional[str], name: Optional[str] = None) -> Principal:
        normalized = normalize_email(email) if email else None
        principal_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO principal (id, email, name) VALUES (%s, %s, %s) RETURNING *",
                    (principal_id, normalized, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._principal_from_row(row)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def save_password_hash(self, principal_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal_credential (principal_id, password_hash, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (principal_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        updated_at = now()
                    """,
                    (principal_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for credentials", {"principal_id": principal_id}
            )

    def get_password_hash(self, principal_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM principal_credential WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        return str(row["password_hash"]) if row else None

    # -- token records ---------------------------------------------------------------

    def _token_from_row(self, row: Dict[str, Any]) -> TokenRecord:
        return TokenRecord(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            device_id=row.get("device_id"),
            device_name=row.get("device_name"),
            platform=Platform.parse(row.get("platform")),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_used_at=row.get("last_used_at"),
            is_revoked=bool(row.get("is_revoked")),
            revoked_at=row.get("revoked_at"),
        )

    def insert_token_record(self, record: TokenRecord) -> TokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO token_record (
                        id, principal_id, refresh_token_hash, device_id, device_name,
                        platform, created_at, expires_at, last_used_at, is_revoked, revoked_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.principal_id,
                        record.refresh_token_hash,
                        record.device_id,
                        record.device_name,
                        record.platform.value,
                        record.created_at,
                        record.expires_at,
                        record.last_used_at,
                        record.is_revoked,
                        record.revoked_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "token record already exists", {"field": "refresh_token_hash"}
            )
        return record

    def patch_token_record(self, token_id: str, **changes: Any) -> Optional[TokenRecord]:
        unknown = set(changes) - TOKEN_PATCH_FIELDS
        if unknown:
            raise ValueError(f"unsupported token record fields: {sorted(unknown)}")
        if not changes:
            return self.get_token_record(token_id)
        # Column names come from TOKEN_PATCH_FIELDS, never from callers
        assignments = ", ".join(f"{name} = %s" for name in sorted(changes))
        params = [changes[name] for name in sorted(changes)] + [token_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE token_record SET {assignments} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_token_record(self, token_id: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token_record WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def find_token_by_hash(self, refresh_token_hash: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token_record WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def find_tokens_by_device(self, principal_id: str, device_id: str) -> List[TokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM token_record WHERE principal_id = %s AND device_id = %s",
                (principal_id, device_id),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def list_tokens_for_principal(self, principal_id: str) -> List[TokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM token_record WHERE principal_id = %s ORDER BY created_at DESC",
                (principal_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    # -- verification codes ----------------------------------------------------------

    def _code_from_row(self, row: Dict[str, Any]) -> VerificationCode:
        return VerificationCode(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            purpose=row["purpose"],
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            used=bool(row["used"]),
            created_at=row["created_at"],
        )

    def insert_verification_code(self, code: VerificationCode) -> VerificationCode:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO verification_code (id, principal_id, purpose, code_hash, expires_at, used, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    code.id,
                    code.principal_id,
                    code.purpose,
                    code.code_hash,
                    code.expires_at,
                    code.used,
                    code.created_at,
                ),
            )
        return code

    def latest_verification_code(
        self, principal_id: str, purpose: str
    ) -> Optional[VerificationCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM verification_code
                WHERE principal_id = %s AND purpose = %s AND used = FALSE
                ORDER BY created_at DESC LIMIT 1
                """,
                (principal_id, purpose),
            ).fetchone()
        return self._code_from_row(row) if row else None

    def mark_verification_code_used(self, code_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE verification_code SET used = TRUE WHERE id = %s", (code_id,))

    def invalidate_verification_codes(self, principal_id: str, purpose: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE verification_code SET used = TRUE
                WHERE principal_id = %s AND purpose = %s AND used = FALSE
                """,
                (principal_id, purpose),
            )
            return cur.rowcount or 0

    def delete_stale_verification_codes(self, now: datetime, limit: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM verification_code WHERE id IN (
                    SELECT id FROM verification_code
                    WHERE used = TRUE OR expires_at < %s
                    LIMIT %s
                )
                """,
                (now, limit),
            )
            return cur.rowcount or 0

    # -- rate limits -----------------------------------------------------------------

    def _window_from_row(self, row: Dict[str, Any]) -> RateLimitWindow:
        return RateLimitWindow(
            identity=row["identity"],
            action=row["action"],
            attempts=int(row["attempts"]),
            window_start=row["window_start"],
            last_attempt=row["last_attempt"],
            locked_until=row.get("locked_until"),
        )

    def get_rate_limit(self, identity: str, action: str) -> Optional[RateLimitWindow]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM rate_limit_window WHERE identity = %s AND action = %s",
                (identity, action),
            ).fetchone()
        return self._window_from_row(row) if row else None

    def update_rate_limit(
        self,
        identity: str,
        action: str,
        update: Callable[[Optional[RateLimitWindow]], Optional[RateLimitWindow]],
    ) -> Optional[RateLimitWindow]:
        with self._connect() as conn, conn.transaction():
            # Serialize the first attempt for a key as well as later ones
            conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))", (f"{identity}:{action}",)
            )
            row = conn.execute(
                """
                SELECT * FROM rate_limit_window
                WHERE identity = %s AND action = %s FOR UPDATE
                """,
                (identity, action),
            ).fetchone()
            updated = update(self._window_from_row(row) if row else None)
            if updated is None:
                conn.execute(
                    "DELETE FROM rate_limit_window WHERE identity = %s AND action = %s",
                    (identity, action),
                )
                return None
            conn.execute(
                """
                INSERT INTO rate_limit_window (identity, action, attempts, window_start, last_attempt, locked_until)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (identity, action) DO UPDATE
                SET attempts = EXCLUDED.attempts,
                    window_start = EXCLUDED.window_start,
                    last_attempt = EXCLUDED.last_attempt,
                    locked_until = EXCLUDED.locked_until
                """,
                (
                    identity,
                    action,
                    updated.attempts,
                    updated.window_start,
                    updated.last_attempt,
                    updated.locked_until,
                ),
            )
        return updated

    def delete_rate_limit(self, identity: str, action: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM rate_limit_window WHERE identity = %s AND action = %s",
                (identity, action),
            )

    def delete_stale_rate_limits(self, older_than: datetime, now: datetime, limit: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM rate_limit_window WHERE (identity, action) IN (
                    SELECT identity, action FROM rate_limit_window
                    WHERE window_start < %s AND (locked_until IS NULL OR locked_until <= %s)
                    LIMIT %s
                )
                """,
                (older_than, now, limit),
            )
            return cur.rowcount or 0

    # -- audit -----------------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO audit_event (id, principal_id, action, detail, created_at) VALUES (%s, %s, %s, %s, %s)",
                (
                    event.id,
                    event.principal_id,
                    event.action,
                    json.dumps(event.detail) if event.detail else None,
                    event.created_at,
                ),
            )

    def list_audit_events(self, principal_id: str) -> List[AuditEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_event WHERE principal_id = %s ORDER BY created_at",
                (principal_id,),
            ).fetchall()
        events = []
        for row in rows:
            detail = row.get("detail")
            if isinstance(detail, str):
                detail = json.loads(detail)
            events.append(
                AuditEvent(
                    id=str(row["id"]),
                    principal_id=str(row["principal_id"]),
                    action=row["action"],
                    created_at=row["created_at"],
                    detail=detail,
                )
            )
        return events
