import pytest

from productive_resolve.errors import AmbiguousTypeError, NotFoundError
from productive_resolve.models import ResolveScope
from productive_resolve.reference_cache import ReferenceCache
from productive_resolve.resolver import ResourceResolver


class BrokenCache:
    async def find_by_unique(self, *args, **kwargs):
        raise RuntimeError("disk full")

    async def search(self, *args, **kwargs):
        raise RuntimeError("disk full")

    async def list_by(self, *args, **kwargs):
        raise RuntimeError("disk full")

    async def upsert(self, *args, **kwargs):
        raise RuntimeError("disk full")

    async def is_mirror_complete(self, *args, **kwargs):
        raise RuntimeError("disk full")

    async def mark_full_sync(self, *args, **kwargs):
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_numeric_id_passes_through_without_io(productive):
    resolver = ResourceResolver(productive)

    matches = await resolver.resolve("12345")
    assert [m.to_dict() for m in matches] == [
        {"id": "12345", "type": "project", "label": "12345", "query": "12345", "exact": True}
    ]
    assert (await resolver.resolve("12345", "person"))[0].type == "person"
    assert productive.calls == []


@pytest.mark.asyncio
async def test_email_resolves_exactly_and_is_written_back(db, clock, productive):
    productive.add_person("500", "Jane", "Doe", "jane@example.com")
    cache = ReferenceCache(db, clock=clock)
    resolver = ResourceResolver(productive, cache)

    matches = await resolver.resolve("jane@example.com")
    assert len(matches) == 1
    assert matches[0].id == "500"
    assert matches[0].type == "person"
    assert matches[0].label == "Jane Doe"
    assert matches[0].exact is True
    assert productive.calls == [("people", {"email": "jane@example.com"}, 1)]

    assert [row.id for row in await cache.find_by_unique("people", "jane@example.com")] == ["500"]

    again = await resolver.resolve("jane@example.com")
    assert again[0].id == "500"
    assert again[0].exact is True
    assert len(productive.calls) == 1


@pytest.mark.asyncio
async def test_unknown_email_raises_not_found(productive):
    resolver = ResourceResolver(productive)

    with pytest.raises(NotFoundError) as exc:
        await resolver.resolve("ghost@example.com")
    assert exc.value.query == "ghost@example.com"
    assert exc.value.type == "person"
    assert str(exc.value) == 'No person found matching "ghost@example.com"'


@pytest.mark.asyncio
async def test_blank_query_is_not_found_without_lookup(productive):
    productive.add_person("500", "Jane", "Doe", "jane@example.com")
    resolver = ResourceResolver(productive)

    with pytest.raises(NotFoundError) as exc:
        await resolver.resolve("   ", "person")
    assert exc.value.type == "person"
    assert productive.calls == []


@pytest.mark.asyncio
async def test_free_text_without_type_is_ambiguous(productive):
    resolver = ResourceResolver(productive)

    with pytest.raises(AmbiguousTypeError) as exc:
        await resolver.resolve("Website Redesign")
    assert exc.value.code == "ambiguous_type"
    assert productive.calls == []


@pytest.mark.asyncio
async def test_deal_number_spellings_resolve_to_same_id(productive):
    productive.add_deal("77", "Big Deal", "D-456")
    resolver = ResourceResolver(productive)

    first = await resolver.resolve("D-456")
    second = await resolver.resolve("DEAL-456")
    assert first[0].id == second[0].id == "77"
    assert first[0].exact and second[0].exact
    assert productive.calls[-1] == ("deals", {"deal_number": "D-456"}, 1)


@pytest.mark.asyncio
async def test_short_project_prefix_is_normalized(productive):
    productive.add_project("100", "Website Redesign", "PRJ-123")
    resolver = ResourceResolver(productive)

    matches = await resolver.resolve("p-123")
    assert matches[0].id == "100"
    assert matches[0].label == "Website Redesign"
    assert productive.calls == [("projects", {"project_number": "PRJ-123"}, 1)]


@pytest.mark.asyncio
async def test_name_search_returns_fuzzy_candidates(productive):
    productive.add_project("1", "Website Redesign", "PRJ-1")
    productive.add_project("2", "Company Web Portal", "PRJ-2")
    productive.add_project("3", "Mobile App", "PRJ-3")
    resolver = ResourceResolver(productive)

    matches = await resolver.resolve("web", "project")
    assert [m.id for m in matches] == ["1", "2"]
    assert all(m.exact is False for m in matches)
    assert productive.calls == [("projects", {"query": "web"}, 10)]

    best = await resolver.resolve("web", "project", first=True)
    assert [m.id for m in best] == ["1"]


@pytest.mark.asyncio
async def test_cached_names_resolve_without_network(db, clock, productive):
    cache = ReferenceCache(db, clock=clock)
    await cache.upsert_projects(
        [
            productive.add_project("1", "Website Redesign", "PRJ-1"),
            productive.add_project("2", "Company Web Portal", "PRJ-2"),
        ]
    )
    await cache.mark_full_sync("projects")
    resolver = ResourceResolver(productive, cache)

    matches = await resolver.resolve("WEB", "project")
    assert [m.id for m in matches] == ["1", "2"]
    assert matches[0].label == "Website Redesign"
    assert (await resolver.resolve("PRJ-2"))[0].id == "2"
    assert productive.calls == []


@pytest.mark.asyncio
async def test_services_are_scoped_to_project(productive):
    productive.add_service("1", "Development", "100")
    productive.add_service("2", "Development", "200")
    productive.add_service("3", "Design", "100")
    resolver = ResourceResolver(productive)

    matches = await resolver.resolve("dev", "service", ResolveScope(project_id="100"))
    assert [m.id for m in matches] == ["1"]
    assert productive.calls == [("services", {"project_id": "100"}, 200)]


@pytest.mark.asyncio
async def test_scoped_services_come_from_cache_when_known(db, clock, productive):
    cache = ReferenceCache(db, clock=clock)
    await cache.upsert_services(
        [
            productive.add_service("1", "Development", "100"),
            productive.add_service("2", "Development", "200"),
        ]
    )
    await cache.mark_full_sync("services")
    resolver = ResourceResolver(productive, cache)

    matches = await resolver.resolve("development", "service", ResolveScope(project_id="200"))
    assert [m.id for m in matches] == ["2"]
    assert productive.calls == []


@pytest.mark.asyncio
async def test_cache_failures_fall_back_to_api(productive):
    productive.add_person("500", "Jane", "Doe", "jane@example.com")
    resolver = ResourceResolver(productive, BrokenCache())

    matches = await resolver.resolve("jane@example.com")
    assert matches[0].id == "500"

    productive.add_company("9", "Acme Corp")
    assert (await resolver.resolve("acme", "company"))[0].id == "9"


@pytest.mark.asyncio
async def test_unique_lookup_miss_falls_back_to_name_search(productive):
    productive.add_project("1", "Legacy prj-999 import", "PRJ-1")
    resolver = ResourceResolver(productive)

    matches = await resolver.resolve("PRJ-999")
    assert [m.id for m in matches] == ["1"]
    assert matches[0].exact is False


@pytest.mark.asyncio
async def test_resolve_value_returns_first_id(productive):
    productive.add_company("9", "Acme Corp")
    resolver = ResourceResolver(productive)

    assert await resolver.resolve_value(" 42 ", "company") == "42"
    assert await resolver.resolve_value("acme", "company") == "9"


@pytest.mark.asyncio
async def test_rows_cached_by_exact_lookups_do_not_answer_name_search(db, clock, productive):
    productive.add_project("1", "Website Redesign", "PRJ-1")
    productive.add_project("2", "Web Portal", "PRJ-2")
    cache = ReferenceCache(db, clock=clock)
    resolver = ResourceResolver(productive, cache)

    assert (await resolver.resolve("PRJ-1"))[0].id == "1"
    matches = await resolver.resolve("web", "project")
    assert [m.id for m in matches] == ["1", "2"]
    assert productive.calls[-1] == ("projects", {"query": "web"}, 10)


@pytest.mark.asyncio
async def test_expired_full_sync_sends_name_search_to_api(db, clock, productive):
    cache = ReferenceCache(db, clock=clock)
    await cache.upsert_projects([productive.add_project("1", "Website Redesign", "PRJ-1")])
    await cache.mark_full_sync("projects")
    resolver = ResourceResolver(productive, cache, max_age_ms=60_000)

    assert [m.id for m in await resolver.resolve("web", "project")] == ["1"]
    assert productive.calls == []

    productive.add_project("2", "Web Portal", "PRJ-2")
    clock.advance(60_001)
    assert [m.id for m in await resolver.resolve("web", "project")] == ["1", "2"]
    assert productive.calls == [("projects", {"query": "web"}, 10)]


@pytest.mark.asyncio
async def test_stale_unique_rows_are_refetched(db, clock, productive):
    cache = ReferenceCache(db, clock=clock)
    await cache.upsert_people([productive.add_person("500", "Jane", "Doe", "jane@example.com")])
    productive.records["people"] = []
    productive.add_person("600", "Jane", "Smith", "jane@example.com")
    resolver = ResourceResolver(productive, cache, max_age_ms=60_000)

    assert (await resolver.resolve("jane@example.com"))[0].id == "500"
    assert productive.calls == []

    clock.advance(60_001)
    matches = await resolver.resolve("jane@example.com")
    assert matches[0].id == "600"
    assert matches[0].label == "Jane Smith"
    assert productive.calls == [("people", {"email": "jane@example.com"}, 1)]
    fresh = await cache.find_by_unique("people", "jane@example.com", max_age_ms=60_000)
    assert [row.id for row in fresh] == ["600"]


@pytest.mark.asyncio
async def test_project_services_are_cached_after_one_scoped_fetch(db, clock, productive):
    productive.add_service("1", "Development", "100")
    productive.add_service("2", "Development", "200")
    productive.add_service("3", "Design", "100")
    cache = ReferenceCache(db, clock=clock)
    resolver = ResourceResolver(productive, cache)

    scope = ResolveScope(project_id="100")
    assert [m.id for m in await resolver.resolve("dev", "service", scope)] == ["1"]
    assert [m.id for m in await resolver.resolve("design", "service", scope)] == ["3"]
    assert productive.calls == [("services", {"project_id": "100"}, 200)]

    other = await resolver.resolve("dev", "service", ResolveScope(project_id="200"))
    assert [m.id for m in other] == ["2"]
    assert productive.calls[-1] == ("services", {"project_id": "200"}, 200)
