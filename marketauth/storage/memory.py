from __future__ import annotations

import json
import threading
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from marketauth.config import PrincipalKind
from marketauth.logging import get_logger
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import LockoutState, Principal, utcnow


class MemoryCredentialStore:
    """In-memory credential binding for one principal kind.

    Lockout transitions run under the store lock so concurrent failures on the
    same principal are serialized. When ``state_dir`` is given the records are
    mirrored to ``<state_dir>/<kind>.json``.
    """

    def __init__(self, kind: PrincipalKind, *, state_dir: str | Path | None = None) -> None:
        self.kind = PrincipalKind(kind)
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._by_identifier: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self._state_path = (
            Path(state_dir) / f"{self.kind.value}.json" if state_dir else None
        )
        if self._state_path:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def verify_connection(self) -> None:
        return None

    def create(self, principal: Principal) -> Principal:
        if principal.kind != self.kind:
            raise ValueError(
                f"{principal.kind.value} principal cannot be stored as {self.kind.value}"
            )
        with self._data_lock:
            if principal.identifier in self._by_identifier:
                raise ConstraintViolation(
                    "identifier already registered", {"field": "identifier"}
                )
            self.principals[principal.id] = replace(principal)
            self._by_identifier[principal.identifier] = principal.id
            self._persist_state()
            return replace(principal)

    def find_by_login_identifier(self, identifier: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._by_identifier.get(identifier)
            if principal_id is None:
                return None
            return replace(self.principals[principal_id])

    def get(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def save(self, principal: Principal) -> None:
        """Persist profile-level attributes; lockout counters go through update_lockout."""
        with self._data_lock:
            existing = self.principals.get(principal.id)
            if existing is None:
                raise ConstraintViolation(
                    "principal not found", {"principal_id": principal.id}
                )
            if existing.identifier != principal.identifier:
                owner = self._by_identifier.get(principal.identifier)
                if owner and owner != principal.id:
                    raise ConstraintViolation(
                        "identifier already registered", {"field": "identifier"}
                    )
                self._by_identifier.pop(existing.identifier, None)
                self._by_identifier[principal.identifier] = principal.id
            self.principals[principal.id] = replace(
                existing,
                identifier=principal.identifier,
                password_hash=principal.password_hash,
                password_algo=principal.password_algo,
                is_active=principal.is_active,
            )
            self._persist_state()

    def set_password_hash(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                raise ConstraintViolation(
                    "principal not found", {"principal_id": principal_id}
                )
            principal.password_hash = password_hash
            principal.password_algo = password_algo
            self._persist_state()

    def update_lockout(
        self,
        principal_id: str,
        transition: Callable[[LockoutState], LockoutState],
    ) -> Optional[LockoutState]:
        """Apply ``transition`` to the lockout counters as one atomic step."""
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                return None
            current = LockoutState(principal.failed_attempts, principal.locked_until)
            updated = transition(current)
            principal.failed_attempts = updated.failed_attempts
            principal.locked_until = updated.locked_until
            self._persist_state()
            return updated

    def record_login(self, principal_id: str, at: datetime) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                return None
            principal.failed_attempts = 0
            principal.locked_until = None
            principal.last_login_at = at
            principal.login_count += 1
            self._persist_state()
            return replace(principal)

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_principal(self, principal: Principal) -> Dict[str, Any]:
        return {
            "id": principal.id,
            "identifier": principal.identifier,
            "password_hash": principal.password_hash,
            "password_algo": principal.password_algo,
            "is_active": principal.is_active,
            "failed_attempts": principal.failed_attempts,
            "locked_until": self._serialize_datetime(principal.locked_until),
            "last_login_at": self._serialize_datetime(principal.last_login_at),
            "login_count": principal.login_count,
            "created_at": self._serialize_datetime(principal.created_at),
        }

    def _deserialize_principal(self, data: Dict[str, Any]) -> Principal:
        return Principal(
            id=data["id"],
            kind=self.kind,
            identifier=data["identifier"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            is_active=data.get("is_active", True),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            login_count=int(data.get("login_count", 0)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        if not self._state_path:
            return
        state = {
            "kind": self.kind.value,
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
        }
        try:
            self._state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential state: {exc}") from exc

    def _load_state(self) -> bool:
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(self._state_path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self._by_identifier = {p.identifier: p.id for p in self.principals.values()}
        self.logger.info(
            "credential_state_loaded", kind=self.kind.value, count=len(self.principals)
        )
        return True


class MemoryRevocationStore:
    """Process-local revocation records with lazy TTL expiry.

    Expired entries are dropped when read, scanned, or swept every
    ``SWEEP_INTERVAL`` writes.

    Only suitable for a single worker process; used for local development and
    unit tests when Redis is absent.
    """

    SWEEP_INTERVAL = 256

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._puts_since_sweep = 0

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            self._entries.pop(key, None)
            return None
        return value

    def _sweep_expired(self, now: float) -> int:
        expired = [key for key, (_value, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._puts_since_sweep += 1
            if self._puts_since_sweep >= self.SWEEP_INTERVAL:
                self._puts_since_sweep = 0
                self._sweep_expired(now)
            self._entries[key] = (value, now + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key, self._clock())

    async def delete(self, key: str) -> int:
        with self._lock:
            existed = self._live(key, self._clock()) is not None
            self._entries.pop(key, None)
            return int(existed)

    async def scan_delete(self, prefix: str) -> int:
        with self._lock:
            now = self._clock()
            removed = 0
            for key in [k for k in self._entries if k.startswith(prefix)]:
                if self._live(key, now) is not None:
                    removed += 1
                self._entries.pop(key, None)
            return removed

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
