from __future__ import annotations

import os
import time

import aiosqlite


def now_ms() -> int:
    return int(time.time() * 1000)


_SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS _meta (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL,
      updated_at INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS cache (
      key TEXT PRIMARY KEY,
      data TEXT NOT NULL,
      endpoint TEXT NOT NULL,
      params TEXT NOT NULL DEFAULT '{}',
      stale_at INTEGER NOT NULL,
      expires_at INTEGER NOT NULL,
      created_at INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache (expires_at);",
    "CREATE INDEX IF NOT EXISTS idx_cache_endpoint ON cache (endpoint);",
    "CREATE INDEX IF NOT EXISTS idx_cache_stale ON cache (stale_at);",
    """
    CREATE TABLE IF NOT EXISTS refresh_queue (
      cache_key TEXT PRIMARY KEY,
      endpoint TEXT NOT NULL,
      params TEXT NOT NULL,
      queued_at INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_queue_queued ON refresh_queue (queued_at);",
    """
    CREATE TABLE IF NOT EXISTS projects (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      project_number TEXT,
      archived INTEGER NOT NULL DEFAULT 0,
      company_id TEXT,
      data TEXT NOT NULL,
      synced_at INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_projects_name ON projects (name COLLATE NOCASE);",
    "CREATE INDEX IF NOT EXISTS idx_projects_number ON projects (project_number COLLATE NOCASE);",
    "CREATE INDEX IF NOT EXISTS idx_projects_company ON projects (company_id);",
    """
    CREATE TABLE IF NOT EXISTS people (
      id TEXT PRIMARY KEY,
      first_name TEXT NOT NULL,
      last_name TEXT NOT NULL,
      email TEXT,
      active INTEGER NOT NULL DEFAULT 1,
      company_id TEXT,
      data TEXT NOT NULL,
      synced_at INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_people_name ON people (first_name COLLATE NOCASE, last_name COLLATE NOCASE);",
    "CREATE INDEX IF NOT EXISTS idx_people_email ON people (email COLLATE NOCASE);",
    """
    CREATE TABLE IF NOT EXISTS services (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      project_id TEXT,
      deal_id TEXT,
      data TEXT NOT NULL,
      synced_at INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_services_name ON services (name COLLATE NOCASE);",
    "CREATE INDEX IF NOT EXISTS idx_services_project ON services (project_id);",
    """
    CREATE TABLE IF NOT EXISTS companies (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      billing_name TEXT,
      data TEXT NOT NULL,
      synced_at INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_companies_name ON companies (name COLLATE NOCASE);",
    """
    CREATE TABLE IF NOT EXISTS deals (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      deal_number TEXT,
      company_id TEXT,
      project_id TEXT,
      data TEXT NOT NULL,
      synced_at INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_deals_name ON deals (name COLLATE NOCASE);",
    "CREATE INDEX IF NOT EXISTS idx_deals_number ON deals (deal_number COLLATE NOCASE);",
)


class Database:
    """One SQLite store per tenant (organization id)."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        if self._db_path != ":memory:":
            dir_name = os.path.dirname(self._db_path)
            if dir_name:
                os.makedirs(dir_name, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path)
        try:
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute("PRAGMA synchronous=NORMAL;")
            for statement in _SCHEMA:
                await conn.execute(statement)
            await conn.commit()
        except aiosqlite.Error:
            await conn.close()
            raise
        self._conn = conn

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def get_meta(self, key: str) -> str | None:
        async with self.conn.execute(
            "SELECT value FROM _meta WHERE key = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return str(row[0])

    async def set_meta(self, key: str, value: str) -> None:
        await self.conn.execute(
            """
            INSERT INTO _meta (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """,
            (key, value, now_ms()),
        )
        await self.conn.commit()

    async def commit(self) -> None:
        await self.conn.commit()

    def file_size(self) -> int:
        if self._db_path == ":memory:":
            return 0
        try:
            return os.path.getsize(self._db_path)
        except OSError:
            return 0

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
