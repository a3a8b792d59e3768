from __future__ import annotations

import asyncio
import os
import re

from productive_resolve.db import Database


_ORG_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

MEMORY = ":memory:"


class StoreRegistry:
    """
    Explicit per-tenant registry of store handles.

    Constructed by the caller and passed down; `get()` opens a tenant's store on
    first use and returns the same handle afterwards. Passing `cache_dir=":memory:"`
    gives every tenant its own in-memory database.
    """

    def __init__(self, cache_dir: str) -> None:
        self._cache_dir = cache_dir
        self._handles: dict[str, Database] = {}
        self._lock = asyncio.Lock()

    def path_for(self, org_id: str) -> str:
        if not _ORG_ID_PATTERN.match(org_id or ""):
            raise ValueError(f"Invalid organization id: {org_id!r}")
        if self._cache_dir == MEMORY:
            return MEMORY
        return os.path.join(self._cache_dir, f"productive-{org_id}.db")

    async def get(self, org_id: str) -> Database:
        existing = self._handles.get(org_id)
        if existing is not None and existing.is_connected:
            return existing
        async with self._lock:
            existing = self._handles.get(org_id)
            if existing is not None and existing.is_connected:
                return existing
            db = Database(self.path_for(org_id))
            await db.connect()
            self._handles[org_id] = db
            return db

    def org_ids(self) -> list[str]:
        return sorted(self._handles)

    async def close(self, org_id: str) -> None:
        async with self._lock:
            db = self._handles.pop(org_id, None)
        if db is not None:
            await db.close()

    async def close_all(self) -> None:
        async with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for db in handles:
            await db.close()
