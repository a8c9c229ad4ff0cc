from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from marketauth.config import PrincipalKind
from marketauth.logging import get_logger
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import LockoutState, Principal, utcnow

# Each kind keeps its own collection, as the marketplace documents do.
PRINCIPAL_TABLES: Dict[PrincipalKind, str] = {
    PrincipalKind.CUSTOMER: "customer",
    PrincipalKind.RESTAURANT: "restaurant_user",
    PrincipalKind.STAFF: "delivery_personnel",
    PrincipalKind.SUPER_ADMIN: "super_admin",
}


def create_pool(dsn: str) -> ConnectionPool:
    return ConnectionPool(
        dsn,
        min_size=2,
        max_size=10,
        kwargs={"row_factory": dict_row, "autocommit": False},
    )


class PostgresCredentialStore:
    """Postgres-backed credential binding for one principal kind."""

    def __init__(self, pool: ConnectionPool, kind: PrincipalKind, *, ensure_schema: bool = True) -> None:
        self.pool = pool
        self.kind = PrincipalKind(kind)
        self.table = PRINCIPAL_TABLES[self.kind]
        self.logger = get_logger(__name__)
        if ensure_schema:
            self._ensure_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_table(self) -> None:
        """Create the kind's credential table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id UUID PRIMARY KEY,
                    identifier TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    password_algo TEXT NOT NULL DEFAULT 'argon2id',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
                    locked_until TIMESTAMPTZ,
                    last_login_at TIMESTAMPTZ,
                    login_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _row_to_principal(self, row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            kind=self.kind,
            identifier=row["identifier"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            is_active=bool(row.get("is_active", True)),
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            login_count=int(row.get("login_count") or 0),
            created_at=row.get("created_at") or utcnow(),
        )

    def create(self, principal: Principal) -> Principal:
        if principal.kind != self.kind:
            raise ValueError(
                f"{principal.kind.value} principal cannot be stored as {self.kind.value}"
            )
        principal_id = principal.id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {self.table}
                        (id, identifier, password_hash, password_algo, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal_id,
                        principal.identifier,
                        principal.password_hash,
                        principal.password_algo,
                        principal.is_active,
                        principal.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("identifier already registered", {"field": "identifier"})
        principal.id = principal_id
        return principal

    def find_by_login_identifier(self, identifier: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.table} WHERE identifier = %s", (identifier,)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def get(self, principal_id: str) -> Optional[Principal]:
        try:
            uuid.UUID(str(principal_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.table} WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def save(self, principal: Principal) -> None:
        """Persist profile-level attributes; lockout counters go through update_lockout."""
        try:
            with self._connect() as conn:
                result = conn.execute(
                    f"""
                    UPDATE {self.table}
                    SET identifier = %s, password_hash = %s, password_algo = %s, is_active = %s
                    WHERE id = %s
                    """,
                    (
                        principal.identifier,
                        principal.password_hash,
                        principal.password_algo,
                        principal.is_active,
                        principal.id,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("identifier already registered", {"field": "identifier"})
        if result.rowcount == 0:
            raise ConstraintViolation("principal not found", {"principal_id": principal.id})

    def set_password_hash(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE {self.table} SET password_hash = %s, password_algo = %s WHERE id = %s",
                (password_hash, password_algo, principal_id),
            )
        if result.rowcount == 0:
            raise ConstraintViolation("principal not found", {"principal_id": principal_id})

    def update_lockout(
        self,
        principal_id: str,
        transition: Callable[[LockoutState], LockoutState],
    ) -> Optional[LockoutState]:
        """Apply ``transition`` under a row lock so concurrent failures serialize."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    f"SELECT failed_attempts, locked_until FROM {self.table} WHERE id = %s FOR UPDATE",
                    (principal_id,),
                ).fetchone()
                if not row:
                    return None
                current = LockoutState(
                    failed_attempts=int(row["failed_attempts"] or 0),
                    locked_until=row["locked_until"],
                )
                updated = transition(current)
                if updated != current:
                    conn.execute(
                        f"UPDATE {self.table} SET failed_attempts = %s, locked_until = %s WHERE id = %s",
                        (updated.failed_attempts, updated.locked_until, principal_id),
                    )
        return updated

    def record_login(self, principal_id: str, at: datetime) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE {self.table}
                SET failed_attempts = 0,
                    locked_until = NULL,
                    last_login_at = %s,
                    login_count = login_count + 1
                WHERE id = %s
                RETURNING *
                """,
                (at, principal_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None
