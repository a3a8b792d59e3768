from typing import Any

import httpx
import pytest
import pytest_asyncio

from productive_resolve.api_client import ApiPage
from productive_resolve.config import AppConfig
from productive_resolve.db import Database


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def _label_text(record: dict[str, Any]) -> str:
    attrs = record.get("attributes") or {}
    parts = [
        attrs.get("name"),
        attrs.get("first_name"),
        attrs.get("last_name"),
        f"{attrs.get('first_name') or ''} {attrs.get('last_name') or ''}",
        attrs.get("email"),
    ]
    return " | ".join(str(p) for p in parts if p).lower()


def _rel(record: dict[str, Any], name: str) -> str | None:
    data = ((record.get("relationships") or {}).get(name) or {}).get("data") or {}
    return data.get("id")


class FakeProductive:
    """In-memory stand-in for the Productive list endpoints, with filter[...] semantics."""

    def __init__(self) -> None:
        self.records: dict[str, list[dict[str, Any]]] = {
            "people": [],
            "projects": [],
            "companies": [],
            "deals": [],
            "services": [],
        }
        self.calls: list[tuple[str, dict[str, str], int | None]] = []
        self.fail_with: int | None = None

    def add_person(self, rid: str, first: str, last: str, email: str) -> dict[str, Any]:
        record = {
            "id": rid,
            "type": "people",
            "attributes": {"first_name": first, "last_name": last, "email": email},
            "relationships": {},
        }
        self.records["people"].append(record)
        return record

    def add_project(self, rid: str, name: str, number: str) -> dict[str, Any]:
        record = {
            "id": rid,
            "type": "projects",
            "attributes": {"name": name, "project_number": number},
            "relationships": {},
        }
        self.records["projects"].append(record)
        return record

    def add_company(self, rid: str, name: str) -> dict[str, Any]:
        record = {"id": rid, "type": "companies", "attributes": {"name": name}, "relationships": {}}
        self.records["companies"].append(record)
        return record

    def add_deal(self, rid: str, name: str, number: str) -> dict[str, Any]:
        record = {
            "id": rid,
            "type": "deals",
            "attributes": {"name": name, "deal_number": number},
            "relationships": {},
        }
        self.records["deals"].append(record)
        return record

    def add_service(self, rid: str, name: str, project_id: str) -> dict[str, Any]:
        record = {
            "id": rid,
            "type": "services",
            "attributes": {"name": name},
            "relationships": {"project": {"data": {"type": "projects", "id": project_id}}},
        }
        self.records["services"].append(record)
        return record

    def body(
        self,
        resource: str,
        *,
        filter: dict[str, str] | None = None,
        page: int | None = None,
        per_page: int | None = None,
    ) -> dict[str, Any]:
        self.calls.append((resource, dict(filter or {}), per_page))
        rows = list(self.records.get(resource, []))
        for key, value in (filter or {}).items():
            if key == "query":
                rows = [r for r in rows if value.lower() in _label_text(r)]
            elif key == "project_id":
                rows = [r for r in rows if _rel(r, "project") == value]
            else:
                rows = [r for r in rows if (r.get("attributes") or {}).get(key) == value]
        size = per_page or 30
        total_pages = max(1, -(-len(rows) // size))
        start = ((page or 1) - 1) * size
        return {"data": rows[start : start + size], "meta": {"total_pages": total_pages}}

    async def _list(self, resource: str, **kwargs: Any) -> ApiPage:
        kwargs.pop("sort", None)
        return ApiPage.model_validate(self.body(resource, **kwargs))

    async def list_people(self, **kwargs: Any) -> ApiPage:
        return await self._list("people", **kwargs)

    async def list_projects(self, **kwargs: Any) -> ApiPage:
        return await self._list("projects", **kwargs)

    async def list_companies(self, **kwargs: Any) -> ApiPage:
        return await self._list("companies", **kwargs)

    async def list_deals(self, **kwargs: Any) -> ApiPage:
        return await self._list("deals", **kwargs)

    async def list_services(self, **kwargs: Any) -> ApiPage:
        return await self._list("services", **kwargs)

    def transport(self) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            if self.fail_with is not None:
                return httpx.Response(self.fail_with, json={"errors": [{"detail": "upstream failed"}]})
            resource = request.url.path.rstrip("/").rsplit("/", 1)[-1]
            params = request.url.params
            filters = {
                key[len("filter[") : -1]: value for key, value in params.items() if key.startswith("filter[")
            }
            page = int(params["page[number]"]) if "page[number]" in params else None
            per_page = int(params["page[size]"]) if "page[size]" in params else None
            return httpx.Response(200, json=self.body(resource, filter=filters, page=page, per_page=per_page))

        return httpx.MockTransport(handler)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def productive() -> FakeProductive:
    return FakeProductive()


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.connect()
    try:
        yield database
    finally:
        await database.close()


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        port=8000,
        organization_id="42",
        api_token="secret-token",
        base_url="https://productive.test/api/v2",
        cache_dir=":memory:",
        cache_enabled=True,
        stale_fraction=0.75,
        reference_max_age_ms=60 * 60 * 1000,
        reference_resync_seconds=0,
        filter_resolve_mode="lenient",
        auth_tokens=["dev-token"],
        api_keys=["dev-key"],
        retry_max_attempts=3,
        retry_base_delay_ms=1,
    )
