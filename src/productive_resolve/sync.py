from __future__ import annotations

import asyncio
import logging

from productive_resolve.api_client import ProductiveClient
from productive_resolve.models import REFERENCE_KINDS, ReferenceKind
from productive_resolve.reference_cache import ReferenceCache


logger = logging.getLogger(__name__)

SYNC_PAGE_SIZE = 200


async def sync_reference_kind(
    *,
    client: ProductiveClient,
    cache: ReferenceCache,
    kind: ReferenceKind,
    per_page: int = SYNC_PAGE_SIZE,
) -> int:
    """Page through one resource and mirror every record into the reference cache."""
    synced = 0
    async for page in client.iter_records(kind, per_page=per_page):
        synced += await cache.upsert(kind, [record.model_dump() for record in page.data])
    await cache.mark_full_sync(kind)
    logger.info("synced %d %s", synced, kind)
    return synced


async def sync_reference_data(
    *,
    client: ProductiveClient,
    cache: ReferenceCache,
    kinds: tuple[ReferenceKind, ...] = REFERENCE_KINDS,
) -> dict[str, int]:
    counts: dict[str, int] = {}
    for kind in kinds:
        counts[kind] = await sync_reference_kind(client=client, cache=cache, kind=kind)
    await cache.db.set_meta("last_sync_counts", ",".join(f"{k}={v}" for k, v in counts.items()))
    return counts


async def sync_if_stale(
    *,
    client: ProductiveClient,
    cache: ReferenceCache,
    max_age_ms: int,
    kinds: tuple[ReferenceKind, ...] = REFERENCE_KINDS,
) -> dict[str, int]:
    """Resync only the kinds whose last full sync is older than `max_age_ms` (or missing)."""
    stale = tuple([kind for kind in kinds if not await cache.is_mirror_complete(kind, max_age_ms)])
    if not stale:
        return {}
    return await sync_reference_data(client=client, cache=cache, kinds=stale)


async def resync_loop(*, client: ProductiveClient, cache: ReferenceCache, max_age_ms: int, seconds: int) -> None:
    while True:
        try:
            await sync_if_stale(client=client, cache=cache, max_age_ms=max_age_ms)
        except Exception as exc:
            # Next interval retries.
            logger.warning("reference resync failed: %s", exc)
        await asyncio.sleep(seconds)
