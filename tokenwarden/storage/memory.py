from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

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


class MemoryStore:
    """In-memory store for tests and single-process deployments.

    All reads and writes go through one RLock, which gives the per-record
    atomicity the lifecycle services rely on. When ``fs_root`` is given the
    state is snapshotted to JSON after every write and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, str] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self.codes: Dict[str, VerificationCode] = {}
        self.rate_limits: Dict[tuple[str, str], RateLimitWindow] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- principals & credentials ----------------------------------------------

    def create_principal(self, email: Optional[str], name: Optional[str] = None) -> Principal:
        with self._data_lock:
            normalized = normalize_email(email) if email else None
            if normalized and any(p.email == normalized for p in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(id=str(uuid.uuid4()), email=normalized, name=name)
            self.principals[principal.id] = principal
            self._persist_state()
            return replace(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = normalize_email(email)
        with self._data_lock:
            principal = next(
                (p for p in self.principals.values() if p.email == normalized), None
            )
            return replace(principal) if principal else None

    def save_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for credentials", {"principal_id": principal_id}
                )
            self.credentials[principal_id] = password_hash
            self._persist_state()

    def get_password_hash(self, principal_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    # -- token records ------------------------------------------------------------

    def insert_token_record(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            if record.id in self.tokens:
                raise ConstraintViolation("token record exists", {"id": record.id})
            if any(
                t.refresh_token_hash == record.refresh_token_hash
                for t in self.tokens.values()
            ):
                raise ConstraintViolation(
                    "refresh token hash collision", {"field": "refresh_token_hash"}
                )
            self.tokens[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def patch_token_record(self, token_id: str, **changes: Any) -> Optional[TokenRecord]:
        unknown = set(changes) - TOKEN_PATCH_FIELDS
        if unknown:
            raise ValueError(f"unsupported token record fields: {sorted(unknown)}")
        with self._data_lock:
            current = self.tokens.get(token_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            self.tokens[token_id] = updated
            self._persist_state()
            return replace(updated)

    def get_token_record(self, token_id: str) -> Optional[TokenRecord]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            return replace(record) if record else None

    def find_token_by_hash(self, refresh_token_hash: str) -> Optional[TokenRecord]:
        with self._data_lock:
            record = next(
                (
                    t
                    for t in self.tokens.values()
                    if t.refresh_token_hash == refresh_token_hash
                ),
                None,
            )
            return replace(record) if record else None

    def find_tokens_by_device(self, principal_id: str, device_id: str) -> List[TokenRecord]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.tokens.values()
                if t.principal_id == principal_id and t.device_id == device_id
            ]

    def list_tokens_for_principal(self, principal_id: str) -> List[TokenRecord]:
        with self._data_lock:
            records = [
                replace(t) for t in self.tokens.values() if t.principal_id == principal_id
            ]
        return sorted(records, key=lambda t: t.created_at, reverse=True)

    # -- verification codes ---------------------------------------------------------

    def insert_verification_code(self, code: VerificationCode) -> VerificationCode:
        with self._data_lock:
            self.codes[code.id] = replace(code)
            self._persist_state()
            return replace(code)

    def latest_verification_code(
        self, principal_id: str, purpose: str
    ) -> Optional[VerificationCode]:
        with self._data_lock:
            candidates = [
                c
                for c in self.codes.values()
                if c.principal_id == principal_id and c.purpose == purpose and not c.used
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda c: c.created_at))

    def mark_verification_code_used(self, code_id: str) -> None:
        with self._data_lock:
            code = self.codes.get(code_id)
            if code is None:
                return
            self.codes[code_id] = replace(code, used=True)
            self._persist_state()

    def invalidate_verification_codes(self, principal_id: str, purpose: str) -> int:
        with self._data_lock:
            stale = [
                c.id
                for c in self.codes.values()
                if c.principal_id == principal_id and c.purpose == purpose and not c.used
            ]
            for code_id in stale:
                self.codes[code_id] = replace(self.codes[code_id], used=True)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_stale_verification_codes(self, now: datetime, limit: int) -> int:
        with self._data_lock:
            stale = [
                c.id for c in self.codes.values() if c.used or c.expires_at < now
            ][:limit]
            for code_id in stale:
                self.codes.pop(code_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- rate limits -------------------------------------------------------------------

    def get_rate_limit(self, identity: str, action: str) -> Optional[RateLimitWindow]:
        with self._data_lock:
            window = self.rate_limits.get((identity, action))
            return replace(window) if window else None

    def update_rate_limit(
        self,
        identity: str,
        action: str,
        update: Callable[[Optional[RateLimitWindow]], Optional[RateLimitWindow]],
    ) -> Optional[RateLimitWindow]:
        with self._data_lock:
            current = self.rate_limits.get((identity, action))
            updated = update(replace(current) if current else None)
            if updated is None:
                self.rate_limits.pop((identity, action), None)
            else:
                self.rate_limits[(identity, action)] = replace(updated)
            self._persist_state()
            return updated

    def delete_rate_limit(self, identity: str, action: str) -> None:
        with self._data_lock:
            if self.rate_limits.pop((identity, action), None) is not None:
                self._persist_state()

    def delete_stale_rate_limits(self, older_than: datetime, now: datetime, limit: int) -> int:
        with self._data_lock:
            stale = [
                key
                for key, window in self.rate_limits.items()
                if window.window_start < older_than
                and (window.locked_until is None or window.locked_until <= now)
            ][:limit]
            for key in stale:
                self.rate_limits.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- audit ---------------------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(replace(event))
            self._persist_state()

    def list_audit_events(self, principal_id: str) -> List[AuditEvent]:
        with self._data_lock:
            return [replace(e) for e in self.audit_events if e.principal_id == principal_id]

    # -- persistence ---------------------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "principals": [
                {
                    "id": p.id,
                    "email": p.email,
                    "name": p.name,
                    "created_at": self._dt(p.created_at),
                }
                for p in self.principals.values()
            ],
            "credentials": [
                {"principal_id": pid, "password_hash": value}
                for pid, value in self.credentials.items()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "codes": [
                {
                    "id": c.id,
                    "principal_id": c.principal_id,
                    "purpose": c.purpose,
                    "code_hash": c.code_hash,
                    "expires_at": self._dt(c.expires_at),
                    "used": c.used,
                    "created_at": self._dt(c.created_at),
                }
                for c in self.codes.values()
            ],
            "rate_limits": [
                {
                    "identity": w.identity,
                    "action": w.action,
                    "attempts": w.attempts,
                    "window_start": self._dt(w.window_start),
                    "last_attempt": self._dt(w.last_attempt),
                    "locked_until": self._dt(w.locked_until),
                }
                for w in self.rate_limits.values()
            ],
            "audit_events": [
                {
                    "id": e.id,
                    "principal_id": e.principal_id,
                    "action": e.action,
                    "created_at": self._dt(e.created_at),
                    "detail": e.detail,
                }
                for e in self.audit_events
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _serialize_token(self, record: TokenRecord) -> dict:
        return {
            "id": record.id,
            "principal_id": record.principal_id,
            "refresh_token_hash": record.refresh_token_hash,
            "device_id": record.device_id,
            "device_name": record.device_name,
            "platform": record.platform.value,
            "created_at": self._dt(record.created_at),
            "expires_at": self._dt(record.expires_at),
            "last_used_at": self._dt(record.last_used_at),
            "is_revoked": record.is_revoked,
            "revoked_at": self._dt(record.revoked_at),
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            id=data["id"],
            principal_id=data["principal_id"],
            refresh_token_hash=data["refresh_token_hash"],
            device_id=data.get("device_id"),
            device_name=data.get("device_name"),
            platform=Platform.parse(data.get("platform")),
            created_at=self._parse_dt(data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            last_used_at=self._parse_dt(data.get("last_used_at")),
            is_revoked=bool(data.get("is_revoked")),
            revoked_at=self._parse_dt(data.get("revoked_at")),
        )

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: Principal(
                id=p["id"],
                email=p.get("email"),
                name=p.get("name"),
                created_at=self._parse_dt(p["created_at"]),
            )
            for p in data.get("principals", [])
        }
        self.credentials = {
            entry["principal_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.codes = {
            c["id"]: VerificationCode(
                id=c["id"],
                principal_id=c["principal_id"],
                purpose=c["purpose"],
                code_hash=c["code_hash"],
                expires_at=self._parse_dt(c["expires_at"]),
                used=bool(c.get("used")),
                created_at=self._parse_dt(c["created_at"]),
            )
            for c in data.get("codes", [])
        }
        self.rate_limits = {}
        for w in data.get("rate_limits", []):
            window = RateLimitWindow(
                identity=w["identity"],
                action=w["action"],
                attempts=int(w["attempts"]),
                window_start=self._parse_dt(w["window_start"]),
                last_attempt=self._parse_dt(w["last_attempt"]),
                locked_until=self._parse_dt(w.get("locked_until")),
            )
            self.rate_limits[(window.identity, window.action)] = window
        self.audit_events = [
            AuditEvent(
                id=e["id"],
                principal_id=e["principal_id"],
                action=e["action"],
                created_at=self._parse_dt(e["created_at"]),
                detail=e.get("detail"),
            )
            for e in data.get("audit_events", [])
        ]
        self.logger.info("memory_store_loaded", tokens=len(self.tokens))
        return True
