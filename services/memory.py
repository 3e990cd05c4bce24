"""In-process binding and credential stores (mock mode and tests)."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
import itertools

from connector.bindings import Binding
from connector.credentials import Credential
from connector.errors import PersistenceFailure


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryBindingStore:
    def __init__(self) -> None:
        self._rows: list[Binding] = []
        self._ids = itertools.count(1)

    @property
    def rows(self) -> list[Binding]:
        return [replace(row) for row in self._rows]

    def _find(self, tenant_id: str, line_id: str) -> int | None:
        for index, row in enumerate(self._rows):
            if row.tenant_id == tenant_id and row.line_id == line_id and row.is_active:
                return index
        return None

    async def get(self, tenant_id: str, line_id: str) -> Binding | None:
        index = self._find(tenant_id, line_id)
        return replace(self._rows[index]) if index is not None else None

    async def get_by_instance(self, instance_id: str) -> Binding | None:
        for row in self._rows:
            if row.instance_id == instance_id and row.is_active:
                return replace(row)
        return None

    async def list(self, tenant_id: str) -> list[Binding]:
        return [replace(row) for row in self._rows if row.tenant_id == tenant_id and row.is_active]

    async def insert(self, binding: Binding) -> Binding:
        if self._find(binding.tenant_id, binding.line_id) is not None:
            raise PersistenceFailure(f"Active binding already exists for line {binding.line_id}")
        row = replace(binding, id=next(self._ids), created_at=binding.created_at or _now())
        self._rows.append(row)
        return replace(row)

    async def update(self, binding: Binding) -> Binding:
        index = self._find(binding.tenant_id, binding.line_id)
        if index is None:
            raise PersistenceFailure(f"No active binding for line {binding.line_id}")
        self._rows[index] = replace(binding, id=self._rows[index].id)
        return replace(self._rows[index])

    async def upsert(self, binding: Binding) -> Binding:
        if self._find(binding.tenant_id, binding.line_id) is None:
            return await self.insert(binding)
        return await self.update(binding)

    async def deactivate(self, tenant_id: str, line_id: str) -> bool:
        index = self._find(tenant_id, line_id)
        if index is None:
            return False
        self._rows[index] = replace(self._rows[index], is_active=False, updated_at=_now())
        return True


class MemoryCredentialStore:
    def __init__(self) -> None:
        self._rows: list[Credential] = []
        self._ids = itertools.count(1)

    @property
    def rows(self) -> list[Credential]:
        return [replace(row) for row in self._rows]

    async def get_active(self, subject: str, portal_url: str) -> Credential | None:
        for row in self._rows:
            if row.subject == subject and row.portal_url == portal_url and row.is_active:
                return replace(row)
        return None

    async def list_active(self) -> list[Credential]:
        return [replace(row) for row in self._rows if row.is_active]

    async def activate(self, credential: Credential) -> Credential:
        for index, row in enumerate(self._rows):
            if row.subject == credential.subject and row.portal_url == credential.portal_url:
                self._rows[index] = replace(row, is_active=False)
        row = replace(credential, id=next(self._ids), is_active=True, updated_at=credential.updated_at or _now())
        self._rows.append(row)
        return replace(row)

    async def update_tokens(self, credential: Credential) -> Credential:
        for index, row in enumerate(self._rows):
            if row.subject == credential.subject and row.portal_url == credential.portal_url and row.is_active:
                self._rows[index] = replace(
                    row,
                    access_token=credential.access_token,
                    refresh_token=credential.refresh_token,
                    expires_at=credential.expires_at,
                    updated_at=credential.updated_at or _now(),
                )
                return replace(self._rows[index])
        raise PersistenceFailure(f"No active credential for {credential.subject} @ {credential.portal_url}")


__all__ = ["MemoryBindingStore", "MemoryCredentialStore"]
