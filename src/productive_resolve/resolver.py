from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

from productive_resolve.api_client import ApiPage, ApiRecord
from productive_resolve.detector import (
    detect_resource_type,
    is_deal_number,
    is_email,
    is_numeric_id,
    is_project_number,
    normalize_deal_number,
    normalize_email,
    normalize_project_number,
)
from productive_resolve.errors import AmbiguousTypeError, NotFoundError
from productive_resolve.models import ReferenceKind, ReferenceRow, ResolveMatch, ResolveScope, ResourceType
from productive_resolve.reference_cache import DEFAULT_MAX_AGE_MS, ReferenceCache


logger = logging.getLogger(__name__)

MAX_RESULTS = 10
SERVICE_PAGE_SIZE = 200


class ResourceApi(Protocol):
    async def list_people(self, **kwargs: Any) -> ApiPage: ...

    async def list_projects(self, **kwargs: Any) -> ApiPage: ...

    async def list_companies(self, **kwargs: Any) -> ApiPage: ...

    async def list_deals(self, **kwargs: Any) -> ApiPage: ...

    async def list_services(self, **kwargs: Any) -> ApiPage: ...


def _person_label(attrs: Mapping[str, Any]) -> str:
    full = f"{attrs.get('first_name') or ''} {attrs.get('last_name') or ''}".strip()
    return full or str(attrs.get("email") or "")


def _project_label(attrs: Mapping[str, Any]) -> str:
    return str(attrs.get("name") or attrs.get("project_number") or "")


def _deal_label(attrs: Mapping[str, Any]) -> str:
    return str(attrs.get("name") or attrs.get("deal_number") or attrs.get("number") or "")


def _name_label(attrs: Mapping[str, Any]) -> str:
    return str(attrs.get("name") or "")


@dataclass(frozen=True)
class ResolverStrategy:
    type: ResourceType
    kind: ReferenceKind
    api_method: str
    label: Callable[[Mapping[str, Any]], str]
    unique_pattern: Callable[[str], bool] | None = None
    unique_filter: str | None = None
    normalize: Callable[[str], str] | None = None
    project_scoped: bool = False

    def has_unique_lookup(self, query: str) -> bool:
        return self.unique_pattern is not None and self.unique_filter is not None and self.unique_pattern(query)

    def lookup_values(self, query: str) -> list[str]:
        values = [self.normalize(query)] if self.normalize else []
        if query not in values:
            values.append(query)
        return values


STRATEGIES: dict[ResourceType, ResolverStrategy] = {
    "person": ResolverStrategy(
        type="person",
        kind="people",
        api_method="list_people",
        label=_person_label,
        unique_pattern=is_email,
        unique_filter="email",
        normalize=normalize_email,
    ),
    "project": ResolverStrategy(
        type="project",
        kind="projects",
        api_method="list_projects",
        label=_project_label,
        unique_pattern=is_project_number,
        unique_filter="project_number",
        normalize=normalize_project_number,
    ),
    "company": ResolverStrategy(
        type="company",
        kind="companies",
        api_method="list_companies",
        label=_name_label,
    ),
    "deal": ResolverStrategy(
        type="deal",
        kind="deals",
        api_method="list_deals",
        label=_deal_label,
        unique_pattern=is_deal_number,
        unique_filter="deal_number",
        normalize=normalize_deal_number,
    ),
    "service": ResolverStrategy(
        type="service",
        kind="services",
        api_method="list_services",
        label=_name_label,
        project_scoped=True,
    ),
}


class ResourceResolver:
    """
    Resolves human-friendly identifiers (emails, project/deal numbers, names)
    to resource IDs. The reference cache is consulted first; records fetched
    from the API are written back to it on a best-effort basis.

    Cached rows older than `max_age_ms` are ignored. Substring searches trust
    the cache only after a full fetch of that kind (or of that project's
    services), since lazily written rows are a partial view.
    """

    def __init__(
        self,
        api: ResourceApi,
        reference_cache: ReferenceCache | None = None,
        *,
        strategies: Mapping[ResourceType, ResolverStrategy] | None = None,
        max_results: int = MAX_RESULTS,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
    ) -> None:
        self.api = api
        self.reference_cache = reference_cache
        self.strategies = dict(strategies or STRATEGIES)
        self.max_results = max_results
        self.max_age_ms = max_age_ms

    async def resolve(
        self,
        query: str,
        type: ResourceType | None = None,
        scope: ResolveScope | None = None,
        *,
        first: bool = False,
    ) -> list[ResolveMatch]:
        needle = query.strip()
        if is_numeric_id(needle):
            return [ResolveMatch(id=needle, type=type or "project", label=needle, query=query, exact=True)]

        resource_type = type or detect_resource_type(needle)
        if resource_type is None:
            raise AmbiguousTypeError(query=query)
        strategy = self.strategies.get(resource_type)
        if strategy is None:
            raise ValueError(f"Unsupported resource type: {resource_type}")
        if not needle:
            raise NotFoundError(query=query, type=resource_type)

        if strategy.has_unique_lookup(needle):
            match = await self._exact_lookup(strategy, needle, query)
            if match is not None:
                return [match]

        matches = await self._substring_search(strategy, needle, query, scope or ResolveScope())
        if not matches:
            raise NotFoundError(query=query, type=resource_type)
        return matches[:1] if first else matches

    async def resolve_value(
        self,
        value: str,
        type: ResourceType,
        scope: ResolveScope | None = None,
    ) -> str:
        if is_numeric_id(value.strip()):
            return value.strip()
        matches = await self.resolve(value, type, scope)
        return matches[0].id

    # Exact lookups

    async def _exact_lookup(self, strategy: ResolverStrategy, needle: str, query: str) -> ResolveMatch | None:
        values = strategy.lookup_values(needle)

        for value in values:
            rows = await self._cache_call("find_by_unique", strategy.kind, value, max_age_ms=self.max_age_ms)
            if rows is not None and len(rows) == 1:
                return self._match_from_row(strategy, rows[0], query, exact=True)

        for value in values:
            page = await self._call_api(strategy, filter={strategy.unique_filter: value}, per_page=1)
            if page.data:
                await self._remember(strategy.kind, page.data[:1])
                return self._match_from_record(strategy, page.data[0], query, exact=True)
        return None

    # Substring search

    async def _substring_search(
        self,
        strategy: ResolverStrategy,
        needle: str,
        query: str,
        scope: ResolveScope,
    ) -> list[ResolveMatch]:
        if strategy.project_scoped:
            return await self._scoped_search(strategy, needle, query, scope.project_id)

        if await self._mirror_complete(strategy.kind):
            rows = await self._cache_call(
                "search", strategy.kind, needle, self.max_results, max_age_ms=self.max_age_ms
            )
            if rows:
                return [self._match_from_row(strategy, row, query, exact=False) for row in rows]

        page = await self._call_api(strategy, filter={"query": needle}, per_page=self.max_results)
        records = page.data[: self.max_results]
        await self._remember(strategy.kind, records)
        return [self._match_from_record(strategy, record, query, exact=False) for record in records]

    async def _scoped_search(
        self,
        strategy: ResolverStrategy,
        needle: str,
        query: str,
        project_id: str | None,
    ) -> list[ResolveMatch]:
        # Service names repeat across projects; narrow to the project before matching.
        project_scope = f"project:{project_id}" if project_id else None
        if project_id:
            if await self._mirror_complete(strategy.kind) or await self._mirror_complete(
                strategy.kind, scope=project_scope
            ):
                known = await self._cache_call(
                    "list_by", strategy.kind, "project_id", project_id, max_age_ms=self.max_age_ms
                )
                if known:
                    rows = [row for row in known if needle.lower() in strategy.label(row.columns).lower()]
                    return [
                        self._match_from_row(strategy, row, query, exact=False) for row in rows[: self.max_results]
                    ]
        elif await self._mirror_complete(strategy.kind):
            rows = await self._cache_call(
                "search", strategy.kind, needle, self.max_results, max_age_ms=self.max_age_ms
            )
            if rows:
                return [self._match_from_row(strategy, row, query, exact=False) for row in rows]

        api_filter = {"project_id": project_id} if project_id else {}
        page = await self._call_api(strategy, filter=api_filter, per_page=SERVICE_PAGE_SIZE)
        remembered = await self._remember(strategy.kind, page.data)
        if remembered and project_scope and page.total_pages <= 1:
            await self._mark_complete(strategy.kind, scope=project_scope)

        lowered = needle.lower()

        def _rank(record: ApiRecord) -> tuple[bool, str, str]:
            label = strategy.label(record.attributes).lower()
            return (not label.startswith(lowered), label, record.id)

        candidates = sorted((r for r in page.data if lowered in strategy.label(r.attributes).lower()), key=_rank)
        return [self._match_from_record(strategy, r, query, exact=False) for r in candidates[: self.max_results]]

    # Plumbing

    async def _call_api(self, strategy: ResolverStrategy, **kwargs: Any) -> ApiPage:
        method = getattr(self.api, strategy.api_method)
        return await method(**kwargs)

    async def _cache_call(self, method: str, *args: Any, **kwargs: Any) -> list[ReferenceRow] | None:
        if self.reference_cache is None:
            return None
        try:
            return await getattr(self.reference_cache, method)(*args, **kwargs)
        except Exception as exc:
            logger.warning("reference cache %s failed, falling back to API: %s", method, exc)
            return None

    async def _mirror_complete(self, kind: ReferenceKind, *, scope: str | None = None) -> bool:
        if self.reference_cache is None:
            return False
        try:
            return await self.reference_cache.is_mirror_complete(kind, self.max_age_ms, scope=scope)
        except Exception as exc:
            logger.warning("reference cache sync check failed for %s: %s", kind, exc)
            return False

    async def _mark_complete(self, kind: ReferenceKind, *, scope: str) -> None:
        if self.reference_cache is None:
            return
        try:
            await self.reference_cache.mark_full_sync(kind, scope=scope)
        except Exception as exc:
            logger.warning("failed to record %s sync for %s: %s", kind, scope, exc)

    async def _remember(self, kind: ReferenceKind, records: list[ApiRecord]) -> bool:
        if self.reference_cache is None:
            return False
        if not records:
            return True
        try:
            await self.reference_cache.upsert(kind, [record.model_dump() for record in records])
        except Exception as exc:
            logger.warning("failed to cache %d %s: %s", len(records), kind, exc)
            return False
        return True

    @staticmethod
    def _match_from_record(strategy: ResolverStrategy, record: ApiRecord, query: str, *, exact: bool) -> ResolveMatch:
        label = strategy.label(record.attributes) or query
        return ResolveMatch(id=record.id, type=strategy.type, label=label, query=query, exact=exact)

    @staticmethod
    def _match_from_row(strategy: ResolverStrategy, row: ReferenceRow, query: str, *, exact: bool) -> ResolveMatch:
        attrs = row.data.get("attributes")
        if not isinstance(attrs, Mapping) or not attrs:
            attrs = row.columns
        label = strategy.label(attrs) or query
        return ResolveMatch(id=row.id, type=strategy.type, label=label, query=query, exact=exact)
