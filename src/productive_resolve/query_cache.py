from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Callable

from productive_resolve.db import Database, now_ms
from productive_resolve.models import CachedResponse, CacheStats, RefreshJob


logger = logging.getLogger(__name__)

DEFAULT_STALE_FRACTION = 0.75
DEFAULT_TTL_MS = 5 * 60 * 1000

# Longest matching prefix wins; unknown endpoints fall back to DEFAULT_TTL_MS.
ENDPOINT_TTLS_MS: dict[str, int] = {
    "/projects": 60 * 60 * 1000,
    "/people": 60 * 60 * 1000,
    "/services": 60 * 60 * 1000,
    "/companies": 60 * 60 * 1000,
    "/deals": 60 * 60 * 1000,
    "/time_entries": 5 * 60 * 1000,
    "/tasks": 15 * 60 * 1000,
    "/budgets": 15 * 60 * 1000,
}


def default_ttl_ms(endpoint: str) -> int:
    best: tuple[int, int] | None = None
    for prefix, ttl in ENDPOINT_TTLS_MS.items():
        if endpoint.startswith(prefix) and (best is None or len(prefix) > best[0]):
            best = (len(prefix), ttl)
    return best[1] if best else DEFAULT_TTL_MS


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def cache_key(endpoint: str, params: dict[str, Any] | None, org_id: str) -> str:
    """
    Stable key for a GET request. The endpoint stays readable so that
    substring invalidation by resource name ("projects") hits its entries.
    """
    digest = hashlib.sha256(_dumps({"endpoint": endpoint, "orgId": org_id, "params": params or {}}).encode("utf-8"))
    return f"{org_id}:{endpoint}?{digest.hexdigest()[:16]}"


class QueryCache:
    """
    Generic response cache with a soft staleness deadline and a hard expiry.

    Entries are Fresh before `stale_at`, Stale (still served) until `expires_at`
    and a miss afterwards. The refresh queue records stale keys for an external
    consumer to re-fetch; a successful `set` settles the key's pending job.
    """

    def __init__(
        self,
        db: Database,
        *,
        stale_fraction: float = DEFAULT_STALE_FRACTION,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if not 0.0 <= stale_fraction <= 1.0:
            raise ValueError("stale_fraction must be within [0, 1]")
        self.db = db
        self.stale_fraction = stale_fraction
        self._clock = clock

    async def get(self, key: str) -> Any | None:
        async with self.db.conn.execute(
            "SELECT data FROM cache WHERE key = ? AND expires_at > ?",
            (key, self._clock()),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning("dropping unreadable cache entry %s", key)
            return None

    async def get_with_meta(self, key: str) -> CachedResponse | None:
        now = self._clock()
        async with self.db.conn.execute(
            """
            SELECT data, endpoint, params, stale_at
            FROM cache
            WHERE key = ? AND expires_at > ?
            """,
            (key, now),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        try:
            data = json.loads(row[0])
            params = json.loads(row[2])
        except ValueError:
            logger.warning("dropping unreadable cache entry %s", key)
            return None
        return CachedResponse(
            data=data,
            is_stale=now >= int(row[3]),
            endpoint=str(row[1]),
            params=params if isinstance(params, dict) else {},
        )

    async def has(self, key: str) -> bool:
        async with self.db.conn.execute(
            "SELECT 1 FROM cache WHERE key = ? AND expires_at > ?",
            (key, self._clock()),
        ) as cursor:
            row = await cursor.fetchone()
        return row is not None

    async def set(
        self,
        key: str,
        data: Any,
        endpoint: str,
        ttl_ms: int,
        params: dict[str, Any] | None = None,
    ) -> None:
        ttl_ms = max(0, int(ttl_ms))
        now = self._clock()
        stale_at = now + int(ttl_ms * self.stale_fraction)
        expires_at = now + ttl_ms
        await self.db.conn.execute(
            """
            INSERT INTO cache (key, data, endpoint, params, stale_at, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
              data=excluded.data,
              endpoint=excluded.endpoint,
              params=excluded.params,
              stale_at=excluded.stale_at,
              expires_at=excluded.expires_at,
              created_at=excluded.created_at
            """,
            (key, _dumps(data), endpoint, _dumps(params or {}), stale_at, expires_at, now),
        )
        await self.db.conn.execute("DELETE FROM refresh_queue WHERE cache_key = ?", (key,))
        await self.db.commit()

    async def delete(self, key: str) -> None:
        await self.db.conn.execute("DELETE FROM cache WHERE key = ?", (key,))
        await self.db.commit()

    async def invalidate(self, pattern: str | None = None) -> int:
        if pattern:
            cur = await self.db.conn.execute(
                "DELETE FROM cache WHERE instr(key, ?) > 0",
                (pattern,),
            )
        else:
            cur = await self.db.conn.execute("DELETE FROM cache")
        deleted = cur.rowcount if cur.rowcount is not None else 0
        await self.db.commit()
        logger.debug("invalidated %d cache entries (pattern=%r)", deleted, pattern)
        return deleted

    async def cleanup(self) -> int:
        cur = await self.db.conn.execute("DELETE FROM cache WHERE expires_at < ?", (self._clock(),))
        deleted = cur.rowcount if cur.rowcount is not None else 0
        await self.db.commit()
        return deleted

    async def stats(self) -> CacheStats:
        now = self._clock()
        async with self.db.conn.execute(
            """
            SELECT COUNT(*), COALESCE(SUM(LENGTH(data)), 0), MIN(created_at)
            FROM cache
            WHERE expires_at > ?
            """,
            (now,),
        ) as cursor:
            row = await cursor.fetchone()
        entries = int(row[0]) if row and row[0] is not None else 0
        size = int(row[1]) if row and row[1] is not None else 0
        oldest = int(row[2]) if row and row[2] is not None else None
        oldest_age = round((now - oldest) / 1000) if oldest is not None else 0
        return CacheStats(entries=entries, size_bytes=size, oldest_age_seconds=oldest_age)

    # Refresh queue

    async def queue_refresh(self, key: str, endpoint: str, params: dict[str, Any] | None = None) -> None:
        await self.db.conn.execute(
            """
            INSERT INTO refresh_queue (cache_key, endpoint, params, queued_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(cache_key) DO UPDATE SET
              endpoint=excluded.endpoint,
              params=excluded.params,
              queued_at=excluded.queued_at
            """,
            (key, endpoint, _dumps(params or {}), self._clock()),
        )
        await self.db.commit()

    async def dequeue_refresh(self, key: str) -> None:
        await self.db.conn.execute("DELETE FROM refresh_queue WHERE cache_key = ?", (key,))
        await self.db.commit()

    async def get_pending_refresh_jobs(self) -> list[RefreshJob]:
        async with self.db.conn.execute(
            """
            SELECT cache_key, endpoint, params, queued_at
            FROM refresh_queue
            ORDER BY queued_at ASC, cache_key ASC
            """
        ) as cursor:
            rows = await cursor.fetchall()
        jobs: list[RefreshJob] = []
        for cache_key_, endpoint, params_text, queued_at in rows:
            try:
                params = json.loads(params_text)
            except ValueError:
                params = {}
            jobs.append(
                RefreshJob(
                    cache_key=str(cache_key_),
                    endpoint=str(endpoint),
                    params=params if isinstance(params, dict) else {},
                    queued_at=int(queued_at),
                )
            )
        return jobs

    async def refresh_queue_count(self) -> int:
        async with self.db.conn.execute("SELECT COUNT(*) FROM refresh_queue") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    async def clear_refresh_queue(self) -> int:
        cur = await self.db.conn.execute("DELETE FROM refresh_queue")
        deleted = cur.rowcount if cur.rowcount is not None else 0
        await self.db.commit()
        return deleted
