from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from pydantic import BaseModel, Field, field_validator

from productive_resolve.query_cache import QueryCache, cache_key, default_ttl_ms


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.productive.io/api/v2"
JSONAPI_CONTENT_TYPE = "application/vnd.api+json"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


class ProductiveTransportError(Exception):
    pass


class ProductiveUpstreamError(Exception):
    def __init__(self, *, status_code: int, body: Any) -> None:
        super().__init__(f"Productive upstream error: {status_code}")
        self.status_code = status_code
        self.body = body

    @property
    def detail(self) -> str | None:
        if isinstance(self.body, dict):
            errors = self.body.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                detail = errors[0].get("detail")
                if isinstance(detail, str):
                    return detail
        return None


class ApiRecord(BaseModel):
    id: str
    type: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    relationships: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("attributes", "relationships", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class ApiPage(BaseModel):
    data: list[ApiRecord] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        value = self.meta.get("total_pages")
        try:
            return max(1, int(value))
        except (TypeError, ValueError):
            return 1


@dataclass(frozen=True)
class ApiResult:
    status_code: int
    body: Any


def build_list_query(
    *,
    filter: dict[str, str] | None = None,
    page: int | None = None,
    per_page: int | None = None,
    sort: str | None = None,
) -> dict[str, str]:
    query: dict[str, str] = {}
    if page:
        query["page[number]"] = str(page)
    if per_page:
        query["page[size]"] = str(per_page)
    if sort:
        query["sort"] = sort
    for key, value in (filter or {}).items():
        query[f"filter[{key}]"] = str(value)
    return query


def resource_name(path: str) -> str:
    # "/time_entries/123" -> "time_entries"
    parts = [part for part in path.split("?", 1)[0].split("/") if part]
    return parts[0] if parts else ""


class ProductiveClient:
    def __init__(
        self,
        *,
        api_token: str | None,
        organization_id: str | None,
        base_url: str = DEFAULT_BASE_URL,
        cache: QueryCache | None = None,
        use_cache: bool = True,
        force_refresh: bool = False,
        max_attempts: int = 3,
        base_delay_ms: int = 200,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_token = api_token
        self._organization_id = organization_id
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.cache = cache
        self.use_cache = use_cache
        self.force_refresh = force_refresh
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms

    @property
    def organization_id(self) -> str | None:
        return self._organization_id

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client:
            return self._client
        if not self._api_token:
            raise ProductiveTransportError("api_token not configured")
        if not self._organization_id:
            raise ProductiveTransportError("organization_id not configured")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(15.0, connect=5.0),
            headers={
                "Content-Type": JSONAPI_CONTENT_TYPE,
                "X-Auth-Token": self._api_token,
                "X-Organization-Id": self._organization_id,
            },
            transport=self._transport,
        )
        return self._client

    async def request_jsonish(
        self,
        *,
        method: str,
        path: str,
        query: dict[str, str] | None = None,
        json_body: Any | None = None,
        retry: bool = False,
    ) -> ApiResult:
        client = await self._get_client()
        attempts = self.max_attempts if retry else 1

        last_transport_error: Exception | None = None
        last_upstream_error: ProductiveUpstreamError | None = None

        for attempt in range(1, attempts + 1):
            try:
                resp = await client.request(method, path, params=query or None, json=json_body)
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.NetworkError) as exc:
                last_transport_error = exc
                if attempt == attempts:
                    raise ProductiveTransportError(str(exc)) from exc
                await self._sleep_backoff(attempt=attempt)
                continue

            body: Any
            content_type = resp.headers.get("content-type", "")
            if "json" in content_type:
                try:
                    body = resp.json()
                except ValueError:
                    body = resp.text
            else:
                body = resp.text

            if resp.status_code >= 400:
                err = ProductiveUpstreamError(status_code=resp.status_code, body=body)
                last_upstream_error = err
                should_retry = retry and (resp.status_code == 429 or 500 <= resp.status_code <= 599)
                if should_retry and attempt < attempts:
                    await self._sleep_backoff(attempt=attempt)
                    continue
                raise err

            return ApiResult(status_code=resp.status_code, body=body)

        if last_upstream_error:
            raise last_upstream_error
        if last_transport_error:
            raise ProductiveTransportError(str(last_transport_error)) from last_transport_error
        raise ProductiveTransportError("request failed")

    async def _sleep_backoff(self, *, attempt: int) -> None:
        delay = (self.base_delay_ms / 1000.0) * (2 ** (attempt - 1))
        delay = delay * (0.5 + random.random())
        await asyncio.sleep(min(delay, 5.0))

    async def request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, str] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        """
        Perform a request through the query cache.

        GET responses are served from the cache while not expired; a stale hit is
        returned as-is and queued for refresh. Writes invalidate every cached
        entry of the touched resource.
        """
        method = method.upper()
        use_cache = self.cache is not None and self.use_cache
        key = cache_key(path, query, self._organization_id or "") if method == "GET" else None

        if method == "GET" and use_cache and not self.force_refresh:
            cached = await self._cached(key, path, query)
            if cached is not None:
                return cached

        result = await self.request_jsonish(
            method=method,
            path=path,
            query=query,
            json_body=json_body,
            retry=method in SAFE_METHODS,
        )

        if method == "GET" and use_cache:
            try:
                await self.cache.set(key, result.body, path, default_ttl_ms(path), params=query or {})
            except Exception as exc:
                logger.warning("cache write failed for %s: %s", path, exc)
        elif method != "GET" and self.cache is not None:
            name = resource_name(path)
            try:
                await self.cache.invalidate(name or None)
            except Exception as exc:
                logger.warning("cache invalidation failed for %s: %s", name, exc)

        return result.body

    async def _cached(self, key: str, path: str, query: dict[str, str] | None) -> Any | None:
        try:
            hit = await self.cache.get_with_meta(key)
            if hit is None:
                logger.debug("cache miss %s", path)
                return None
            if hit.is_stale:
                await self.cache.queue_refresh(key, path, query or {})
            logger.debug("cache hit %s (stale=%s)", path, hit.is_stale)
            return hit.data
        except Exception as exc:
            logger.warning("cache read failed for %s: %s", path, exc)
            return None

    async def list_records(
        self,
        resource: str,
        *,
        filter: dict[str, str] | None = None,
        page: int | None = None,
        per_page: int | None = None,
        sort: str | None = None,
    ) -> ApiPage:
        body = await self.request(
            "GET",
            f"/{resource}",
            query=build_list_query(filter=filter, page=page, per_page=per_page, sort=sort),
        )
        if not isinstance(body, dict):
            raise ProductiveUpstreamError(status_code=200, body=body)
        return ApiPage.model_validate(body)

    async def list_people(self, **kwargs: Any) -> ApiPage:
        return await self.list_records("people", **kwargs)

    async def list_projects(self, **kwargs: Any) -> ApiPage:
        return await self.list_records("projects", **kwargs)

    async def list_companies(self, **kwargs: Any) -> ApiPage:
        return await self.list_records("companies", **kwargs)

    async def list_deals(self, **kwargs: Any) -> ApiPage:
        return await self.list_records("deals", **kwargs)

    async def list_services(self, **kwargs: Any) -> ApiPage:
        return await self.list_records("services", **kwargs)

    async def iter_records(
        self,
        resource: str,
        *,
        filter: dict[str, str] | None = None,
        per_page: int = 200,
    ) -> AsyncIterator[ApiPage]:
        page = 1
        while True:
            result = await self.list_records(resource, filter=filter, page=page, per_page=per_page)
            yield result
            if page >= result.total_pages:
                return
            page += 1
