from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from fleetauth.logging import get_logger
from fleetauth.storage.errors import ConstraintViolation, StorageUnavailable
from fleetauth.storage.models import (
    DEVICE_STATUS_ACCEPTED,
    DEVICE_STATUS_PENDING,
    Device,
    Token,
    utcnow,
)


class PostgresStore:
    """Postgres-backed device and token store.

    Device identity is unique per tenant at the schema level. Token
    acquisition locks the device row, which serializes it against status
    updates for the same device.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            raise StorageUnavailable(
                "database connection timed out", {"timeout": self.timeout_seconds}
            ) from exc
        except errors.QueryCanceled as exc:
            raise StorageUnavailable(
                "database statement timed out", {"timeout": self.timeout_seconds}
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``device`` and ``device_token`` tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS device (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL DEFAULT '',
                    identity_data TEXT NOT NULL,
                    public_key TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    UNIQUE (tenant_id, identity_data)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS device_token (
                    id TEXT PRIMARY KEY,
                    device_id TEXT NOT NULL REFERENCES device(id) ON DELETE CASCADE,
                    tenant_id TEXT NOT NULL DEFAULT '',
                    issued_at TIMESTAMPTZ NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    revoked BOOLEAN NOT NULL DEFAULT FALSE
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS device_token_device_idx ON device_token (device_id)"
            )

    @staticmethod
    def _device_from_row(row: dict) -> Device:
        return Device(
            id=str(row["id"]),
            identity_data=row["identity_data"],
            public_key=row["public_key"],
            status=row.get("status") or DEVICE_STATUS_PENDING,
            tenant_id=row.get("tenant_id") or "",
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict) -> Token:
        return Token(
            id=str(row["id"]),
            device_id=str(row["device_id"]),
            tenant_id=row.get("tenant_id") or "",
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked", False)),
        )

    # devices
    def create_or_get_device(
        self, identity_data: str, public_key: str, *, tenant_id: str
    ) -> Tuple[Device, bool]:
        candidate = Device.new(identity_data, public_key, tenant_id=tenant_id)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO device (id, tenant_id, identity_data, public_key, status, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, identity_data) DO NOTHING
                RETURNING *
                """,
                (
                    candidate.id,
                    tenant_id,
                    identity_data,
                    public_key,
                    candidate.status,
                    candidate.created_at,
                    candidate.updated_at,
                ),
            ).fetchone()
            if row:
                return self._device_from_row(row), True
            row = conn.execute(
                "SELECT * FROM device WHERE tenant_id = %s AND identity_data = %s",
                (tenant_id, identity_data),
            ).fetchone()
        if not row:
            # the conflicting row was deleted between the insert and the select
            raise ConstraintViolation(
                "device identity conflict", {"identity_data": identity_data}
            )
        return self._device_from_row(row), False

    def get_device(self, device_id: str, *, tenant_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device WHERE id = %s AND tenant_id = %s",
                (device_id, tenant_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def list_devices(
        self,
        *,
        tenant_id: str,
        skip: int = 0,
        limit: int = 100,
        status: Optional[str] = None,
    ) -> List[Device]:
        clauses = ["tenant_id = %s"]
        params: list[Any] = [tenant_id]
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        params.extend([limit, skip])
        query = f"SELECT * FROM device WHERE {' AND '.join(clauses)} ORDER BY id LIMIT %s OFFSET %s"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._device_from_row(r) for r in rows]

    def update_device_status(
        self, device_id: str, status: str, *, tenant_id: str
    ) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE device
                SET status = %s,
                    updated_at = CASE WHEN status = %s THEN updated_at ELSE now() END
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (status, status, device_id, tenant_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def update_device_key(
        self, device_id: str, public_key: str, *, tenant_id: str
    ) -> Device:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE device SET public_key = %s, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (public_key, device_id, tenant_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "device not found for key update", {"device_id": device_id}
            )
        return self._device_from_row(row)

    # tokens
    def acquire_device_token(self, candidate: Token, *, now: datetime) -> Optional[Token]:
        with self._connect() as conn:
            device_row = conn.execute(
                "SELECT status FROM device WHERE id = %s AND tenant_id = %s FOR UPDATE",
                (candidate.device_id, candidate.tenant_id),
            ).fetchone()
            if not device_row or device_row["status"] != DEVICE_STATUS_ACCEPTED:
                return None
            live = conn.execute(
                """
                SELECT * FROM device_token
                WHERE device_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY issued_at DESC
                LIMIT 1
                """,
                (candidate.device_id, now),
            ).fetchone()
            if live:
                return self._token_from_row(live)
            try:
                conn.execute(
                    """
                    INSERT INTO device_token (id, device_id, tenant_id, issued_at, expires_at, revoked)
                    VALUES (%s, %s, %s, %s, %s, FALSE)
                    """,
                    (
                        candidate.id,
                        candidate.device_id,
                        candidate.tenant_id,
                        candidate.issued_at,
                        candidate.expires_at,
                    ),
                )
            except errors.UniqueViolation:
                raise ConstraintViolation("token id already exists", {"token_id": candidate.id})
        return candidate

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def revoke_token(self, token_id: str, *, tenant_id: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE device_token SET revoked = TRUE
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (token_id, tenant_id),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def revoke_device_tokens(self, device_id: str, *, tenant_id: str) -> List[Token]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE device_token SET revoked = TRUE
                WHERE device_id = %s AND tenant_id = %s AND revoked = FALSE
                RETURNING *
                """,
                (device_id, tenant_id),
            ).fetchall()
        return [self._token_from_row(r) for r in rows]

    def close(self) -> None:
        self.pool.close()
