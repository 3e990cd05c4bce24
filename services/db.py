"""asyncpg-backed binding and credential stores."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator
import logging

import asyncpg

from connector.bindings import Binding, BindingStatus
from connector.credentials import Credential
from connector.errors import PersistenceFailure

logger = logging.getLogger(__name__)

BINDING_COLUMNS = """
    id, tenant_id, bitrix_line_id, bitrix_line_name, evo_instance_id, status,
    qr_code, is_active, last_sync_at, created_at, updated_at
"""

CREDENTIAL_COLUMNS = """
    id, user_id, portal_url, access_token, refresh_token, expires_at, is_active, updated_at
"""


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        logger.error("Store operation %s failed: %s", operation, exc)
        raise PersistenceFailure(f"{operation} failed: {exc}") from exc


async def ensure_connector_schema(conn: asyncpg.Connection) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS wa_sessions (
            id                bigserial PRIMARY KEY,
            tenant_id         text NOT NULL,
            bitrix_line_id    text NOT NULL,
            bitrix_line_name  text,
            evo_instance_id   text NOT NULL,
            status            text NOT NULL DEFAULT 'pending_qr',
            qr_code           text,
            is_active         boolean NOT NULL DEFAULT true,
            last_sync_at      timestamptz,
            created_at        timestamptz NOT NULL DEFAULT NOW(),
            updated_at        timestamptz NOT NULL DEFAULT NOW()
        );
        """
    )
    await conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_wa_sessions_active_line
        ON wa_sessions(tenant_id, bitrix_line_id)
        WHERE is_active;
        """
    )
    await conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_wa_sessions_instance
        ON wa_sessions(evo_instance_id);
        """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS bitrix_credentials (
            id             bigserial PRIMARY KEY,
            user_id        text NOT NULL,
            portal_url     text NOT NULL,
            access_token   text NOT NULL,
            refresh_token  text,
            expires_at     timestamptz,
            is_active      boolean NOT NULL DEFAULT true,
            created_at     timestamptz NOT NULL DEFAULT NOW(),
            updated_at     timestamptz NOT NULL DEFAULT NOW()
        );
        """
    )
    await conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_bitrix_credentials_active
        ON bitrix_credentials(user_id, portal_url)
        WHERE is_active;
        """
    )


def _status(raw: str | None) -> BindingStatus:
    try:
        return BindingStatus((raw or "unknown").lower())
    except ValueError:
        return BindingStatus.UNKNOWN


def _binding_from_row(row: asyncpg.Record) -> Binding:
    return Binding(
        id=row["id"],
        tenant_id=row["tenant_id"],
        line_id=row["bitrix_line_id"],
        line_name=row["bitrix_line_name"],
        instance_id=row["evo_instance_id"],
        status=_status(row["status"]),
        pairing_code=row["qr_code"],
        is_active=row["is_active"],
        last_sync_at=row["last_sync_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _credential_from_row(row: asyncpg.Record) -> Credential:
    return Credential(
        id=row["id"],
        subject=row["user_id"],
        portal_url=row["portal_url"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        is_active=row["is_active"],
        updated_at=row["updated_at"],
    )


class PgBindingStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get(self, tenant_id: str, line_id: str) -> Binding | None:
        with _store_errors("get binding"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {BINDING_COLUMNS}
                    FROM wa_sessions
                    WHERE tenant_id=$1 AND bitrix_line_id=$2 AND is_active
                    LIMIT 1
                    """,
                    tenant_id,
                    line_id,
                )
        return _binding_from_row(row) if row else None

    async def get_by_instance(self, instance_id: str) -> Binding | None:
        with _store_errors("get binding by instance"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {BINDING_COLUMNS}
                    FROM wa_sessions
                    WHERE evo_instance_id=$1 AND is_active
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """,
                    instance_id,
                )
        return _binding_from_row(row) if row else None

    async def list(self, tenant_id: str) -> list[Binding]:
        with _store_errors("list bindings"):
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {BINDING_COLUMNS}
                    FROM wa_sessions
                    WHERE tenant_id=$1 AND is_active
                    ORDER BY bitrix_line_id
                    """,
                    tenant_id,
                )
        return [_binding_from_row(row) for row in rows]

    async def insert(self, binding: Binding) -> Binding:
        with _store_errors("insert binding"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO wa_sessions (tenant_id, bitrix_line_id, bitrix_line_name, evo_instance_id,
                                             status, qr_code, last_sync_at, created_at, updated_at)
                    VALUES ($1,$2,$3,$4,$5,$6,$7,COALESCE($8, NOW()),COALESCE($9, NOW()))
                    RETURNING {BINDING_COLUMNS}
                    """,
                    binding.tenant_id,
                    binding.line_id,
                    binding.line_name,
                    binding.instance_id,
                    binding.status.value,
                    binding.pairing_code,
                    binding.last_sync_at,
                    binding.created_at,
                    binding.updated_at,
                )
        return _binding_from_row(row)

    async def update(self, binding: Binding) -> Binding:
        with _store_errors("update binding"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE wa_sessions
                    SET evo_instance_id=$3,
                        bitrix_line_name=$4,
                        status=$5,
                        qr_code=$6,
                        last_sync_at=$7,
                        updated_at=COALESCE($8, NOW())
                    WHERE tenant_id=$1 AND bitrix_line_id=$2 AND is_active
                    RETURNING {BINDING_COLUMNS}
                    """,
                    binding.tenant_id,
                    binding.line_id,
                    binding.instance_id,
                    binding.line_name,
                    binding.status.value,
                    binding.pairing_code,
                    binding.last_sync_at,
                    binding.updated_at,
                )
        if row is None:
            raise PersistenceFailure(f"No active binding for line {binding.line_id}")
        return _binding_from_row(row)

    async def upsert(self, binding: Binding) -> Binding:
        with _store_errors("upsert binding"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO wa_sessions (tenant_id, bitrix_line_id, bitrix_line_name, evo_instance_id,
                                             status, qr_code, last_sync_at, created_at, updated_at)
                    VALUES ($1,$2,$3,$4,$5,$6,$7,COALESCE($8, NOW()),COALESCE($9, NOW()))
                    ON CONFLICT (tenant_id, bitrix_line_id) WHERE is_active
                    DO UPDATE SET evo_instance_id=EXCLUDED.evo_instance_id,
                                  bitrix_line_name=COALESCE(EXCLUDED.bitrix_line_name, wa_sessions.bitrix_line_name),
                                  status=EXCLUDED.status,
                                  qr_code=EXCLUDED.qr_code,
                                  updated_at=EXCLUDED.updated_at
                    RETURNING {BINDING_COLUMNS}
                    """,
                    binding.tenant_id,
                    binding.line_id,
                    binding.line_name,
                    binding.instance_id,
                    binding.status.value,
                    binding.pairing_code,
                    binding.last_sync_at,
                    binding.created_at,
                    binding.updated_at,
                )
        return _binding_from_row(row)

    async def deactivate(self, tenant_id: str, line_id: str) -> bool:
        with _store_errors("deactivate binding"):
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE wa_sessions
                    SET is_active=false, updated_at=NOW()
                    WHERE tenant_id=$1 AND bitrix_line_id=$2 AND is_active
                    """,
                    tenant_id,
                    line_id,
                )
        return result.endswith(" 1")


class PgCredentialStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_active(self, subject: str, portal_url: str) -> Credential | None:
        with _store_errors("get credential"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {CREDENTIAL_COLUMNS}
                    FROM bitrix_credentials
                    WHERE user_id=$1 AND portal_url=$2 AND is_active
                    LIMIT 1
                    """,
                    subject,
                    portal_url,
                )
        return _credential_from_row(row) if row else None

    async def list_active(self) -> list[Credential]:
        with _store_errors("list credentials"):
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {CREDENTIAL_COLUMNS} FROM bitrix_credentials WHERE is_active ORDER BY id"
                )
        return [_credential_from_row(row) for row in rows]

    async def activate(self, credential: Credential) -> Credential:
        with _store_errors("activate credential"):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        UPDATE bitrix_credentials
                        SET is_active=false, updated_at=NOW()
                        WHERE user_id=$1 AND portal_url=$2 AND is_active
                        """,
                        credential.subject,
                        credential.portal_url,
                    )
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO bitrix_credentials (user_id, portal_url, access_token, refresh_token, expires_at)
                        VALUES ($1,$2,$3,$4,$5)
                        RETURNING {CREDENTIAL_COLUMNS}
                        """,
                        credential.subject,
                        credential.portal_url,
                        credential.access_token,
                        credential.refresh_token,
                        credential.expires_at,
                    )
        return _credential_from_row(row)

    async def update_tokens(self, credential: Credential) -> Credential:
        with _store_errors("update credential"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE bitrix_credentials
                    SET access_token=$3,
                        refresh_token=$4,
                        expires_at=$5,
                        updated_at=NOW()
                    WHERE user_id=$1 AND portal_url=$2 AND is_active
                    RETURNING {CREDENTIAL_COLUMNS}
                    """,
                    credential.subject,
                    credential.portal_url,
                    credential.access_token,
                    credential.refresh_token,
                    credential.expires_at,
                )
        if row is None:
            raise PersistenceFailure(f"No active credential for {credential.subject} @ {credential.portal_url}")
        return _credential_from_row(row)


__all__ = ["PgBindingStore", "PgCredentialStore", "ensure_connector_schema"]
