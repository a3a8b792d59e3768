import pytest

from productive_resolve.db import Database
from productive_resolve.query_cache import QueryCache, cache_key, default_ttl_ms


@pytest.mark.asyncio
async def test_set_then_get_returns_data_while_not_expired(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.set("k1", {"data": [{"id": "1"}]}, "/projects", ttl_ms=1000)

    assert await cache.get("k1") == {"data": [{"id": "1"}]}
    assert await cache.has("k1")

    clock.advance(999)
    assert await cache.get("k1") == {"data": [{"id": "1"}]}

    clock.advance(1)
    assert await cache.get("k1") is None
    assert await cache.get_with_meta("k1") is None
    assert not await cache.has("k1")


@pytest.mark.asyncio
async def test_entry_turns_stale_at_three_quarters_of_ttl(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.set("k1", [1, 2, 3], "/people", ttl_ms=1000, params={"page[size]": "1"})

    hit = await cache.get_with_meta("k1")
    assert hit is not None
    assert hit.is_stale is False
    assert hit.endpoint == "/people"
    assert hit.params == {"page[size]": "1"}

    clock.advance(749)
    assert (await cache.get_with_meta("k1")).is_stale is False

    clock.advance(1)
    hit = await cache.get_with_meta("k1")
    assert hit.is_stale is True
    assert hit.data == [1, 2, 3]


@pytest.mark.asyncio
async def test_custom_stale_fraction(db, clock):
    cache = QueryCache(db, stale_fraction=0.5, clock=clock)
    await cache.set("k1", "x", "/tasks", ttl_ms=1000)
    clock.advance(500)
    assert (await cache.get_with_meta("k1")).is_stale is True


def test_stale_fraction_must_be_a_fraction():
    with pytest.raises(ValueError):
        QueryCache(Database(":memory:"), stale_fraction=1.5)


@pytest.mark.asyncio
async def test_zero_ttl_is_an_immediate_miss(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.set("k1", {"a": 1}, "/projects", ttl_ms=0)
    assert await cache.get("k1") is None


@pytest.mark.asyncio
async def test_set_overwrites_existing_entry(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.set("k1", {"v": 1}, "/projects", ttl_ms=1000)
    clock.advance(900)
    await cache.set("k1", {"v": 2}, "/projects", ttl_ms=1000)

    hit = await cache.get_with_meta("k1")
    assert hit.data == {"v": 2}
    assert hit.is_stale is False


@pytest.mark.asyncio
async def test_delete_removes_single_entry(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.set("k1", 1, "/projects", ttl_ms=1000)
    await cache.set("k2", 2, "/projects", ttl_ms=1000)
    await cache.delete("k1")
    assert await cache.get("k1") is None
    assert await cache.get("k2") == 2


@pytest.mark.asyncio
async def test_invalidate_by_substring_and_all(db, clock):
    cache = QueryCache(db, clock=clock)
    projects_key = cache_key("/projects", {"page[size]": "10"}, "42")
    people_key = cache_key("/people", None, "42")
    await cache.set(projects_key, {"data": []}, "/projects", ttl_ms=60_000)
    await cache.set(people_key, {"data": []}, "/people", ttl_ms=60_000)

    assert await cache.invalidate("projects") == 1
    assert await cache.get(projects_key) is None
    assert await cache.get(people_key) == {"data": []}

    assert await cache.invalidate() == 1
    assert await cache.get(people_key) is None


@pytest.mark.asyncio
async def test_invalidate_pattern_is_literal(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.set("42:/projects?abc", 1, "/projects", ttl_ms=60_000)
    assert await cache.invalidate("%") == 0
    assert await cache.has("42:/projects?abc")


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_entries(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.set("short", 1, "/time_entries", ttl_ms=100)
    await cache.set("long", 2, "/projects", ttl_ms=10_000)

    clock.advance(101)
    assert await cache.cleanup() == 1
    assert await cache.get("long") == 2
    assert await cache.cleanup() == 0


@pytest.mark.asyncio
async def test_stats_counts_live_entries(db, clock):
    cache = QueryCache(db, clock=clock)
    assert (await cache.stats()).entries == 0

    await cache.set("a", {"x": 1}, "/projects", ttl_ms=60_000)
    clock.advance(5_000)
    await cache.set("b", [1], "/people", ttl_ms=60_000)

    stats = await cache.stats()
    assert stats.entries == 2
    assert stats.size_bytes == len('{"x":1}') + len("[1]")
    assert stats.oldest_age_seconds == 5


@pytest.mark.asyncio
async def test_refresh_queue_replaces_and_orders_jobs(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.queue_refresh("k1", "/projects", {"page[size]": "1"})
    clock.advance(10)
    await cache.queue_refresh("k2", "/people")
    clock.advance(10)
    await cache.queue_refresh("k1", "/projects", {"page[size]": "2"})

    jobs = await cache.get_pending_refresh_jobs()
    assert [job.cache_key for job in jobs] == ["k2", "k1"]
    assert jobs[1].params == {"page[size]": "2"}
    assert jobs[1].queued_at == clock.now
    assert await cache.refresh_queue_count() == 2


@pytest.mark.asyncio
async def test_set_settles_pending_refresh_job(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.queue_refresh("k1", "/projects")
    await cache.queue_refresh("k2", "/people")

    await cache.set("k1", {"data": []}, "/projects", ttl_ms=1000)
    assert [job.cache_key for job in await cache.get_pending_refresh_jobs()] == ["k2"]

    await cache.dequeue_refresh("k2")
    assert await cache.refresh_queue_count() == 0


@pytest.mark.asyncio
async def test_clear_refresh_queue_reports_count(db, clock):
    cache = QueryCache(db, clock=clock)
    await cache.queue_refresh("k1", "/projects")
    await cache.queue_refresh("k2", "/people")
    assert await cache.clear_refresh_queue() == 2
    assert await cache.get_pending_refresh_jobs() == []


def test_cache_key_is_stable_and_scoped():
    a = cache_key("/projects", {"page[size]": "10", "filter[query]": "web"}, "42")
    b = cache_key("/projects", {"filter[query]": "web", "page[size]": "10"}, "42")
    assert a == b
    assert a.startswith("42:/projects?")
    assert cache_key("/projects", {"page[size]": "10", "filter[query]": "web"}, "43") != a
    assert cache_key("/projects", None, "42") == cache_key("/projects", {}, "42")


def test_default_ttls_by_endpoint():
    assert default_ttl_ms("/projects") == 60 * 60 * 1000
    assert default_ttl_ms("/people") == 60 * 60 * 1000
    assert default_ttl_ms("/time_entries/12") == 5 * 60 * 1000
    assert default_ttl_ms("/tasks") == 15 * 60 * 1000
    assert default_ttl_ms("/budgets") == 15 * 60 * 1000
    assert default_ttl_ms("/invoices") == 5 * 60 * 1000
