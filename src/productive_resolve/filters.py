from __future__ import annotations

import asyncio
import logging
from typing import Literal, Mapping

from productive_resolve.detector import is_numeric_id
from productive_resolve.models import ResolvedFilterMetadata, ResolvedFilters, ResolveMatch, ResolveScope, ResourceType
from productive_resolve.resolver import ResourceResolver


logger = logging.getLogger(__name__)

ResolveMode = Literal["lenient", "strict"]

FILTER_TYPE_MAPPING: dict[str, ResourceType] = {
    "person_id": "person",
    "assignee_id": "person",
    "creator_id": "person",
    "responsible_id": "person",
    "project_id": "project",
    "company_id": "company",
    "deal_id": "deal",
    "service_id": "service",
}


class FilterResolver:
    """
    Rewrites a filter map, replacing human-friendly values of known ID keys with
    resolved IDs. Never raises: a key that fails to resolve keeps its raw value
    and gets no metadata entry.

    In `lenient` mode an ambiguous fuzzy result resolves to its first candidate
    (recorded with `reusable=False`); `strict` mode only accepts a single exact
    match.
    """

    def __init__(
        self,
        resolver: ResourceResolver,
        *,
        mode: ResolveMode = "lenient",
        type_mapping: Mapping[str, ResourceType] | None = None,
    ) -> None:
        if mode not in ("lenient", "strict"):
            raise ValueError(f"Unknown resolve mode: {mode}")
        self.resolver = resolver
        self.mode = mode
        self.type_mapping = dict(type_mapping or FILTER_TYPE_MAPPING)

    def needs_resolution(self, key: str, value: str) -> bool:
        return key in self.type_mapping and bool(value.strip()) and not is_numeric_id(value)

    async def resolve_filters(
        self,
        filters: Mapping[str, str],
        scope: ResolveScope | None = None,
    ) -> ResolvedFilters:
        result = ResolvedFilters(resolved=dict(filters))
        pending = [key for key, value in filters.items() if self.needs_resolution(key, value)]
        if not pending:
            return result

        # Project-scoped keys go last so a freshly resolved project_id can scope them.
        first = [key for key in pending if self.type_mapping[key] != "service"]
        later = [key for key in pending if self.type_mapping[key] == "service"]

        await self._resolve_keys(first, filters, scope, result)
        if later:
            await self._resolve_keys(later, filters, self._service_scope(scope, result), result)

        # Keep metadata ordered like the input.
        result.metadata = {key: result.metadata[key] for key in filters if key in result.metadata}
        return result

    @staticmethod
    def _service_scope(scope: ResolveScope | None, result: ResolvedFilters) -> ResolveScope | None:
        if scope is not None and scope.project_id:
            return scope
        project_id = result.resolved.get("project_id")
        if project_id and is_numeric_id(project_id):
            return ResolveScope(project_id=project_id)
        return scope

    async def _resolve_keys(
        self,
        keys: list[str],
        filters: Mapping[str, str],
        scope: ResolveScope | None,
        result: ResolvedFilters,
    ) -> None:
        outcomes = await asyncio.gather(
            *(self._resolve_one(key, filters[key], scope) for key in keys),
        )
        for key, outcome in zip(keys, outcomes):
            if outcome is None:
                continue
            match, reusable = outcome
            result.resolved[key] = match.id
            result.metadata[key] = ResolvedFilterMetadata(
                input=filters[key],
                id=match.id,
                label=match.label,
                reusable=reusable,
            )

    async def _resolve_one(
        self,
        key: str,
        value: str,
        scope: ResolveScope | None,
    ) -> tuple[ResolveMatch, bool] | None:
        try:
            matches = await self.resolver.resolve(value, self.type_mapping[key], scope)
        except Exception as exc:
            logger.info("filter %s=%r left unresolved: %s", key, value, exc)
            return None
        if not matches:
            return None

        reusable = len(matches) == 1 and matches[0].exact
        if self.mode == "strict" and not reusable:
            logger.info("filter %s=%r is ambiguous (%d candidates), keeping raw value", key, value, len(matches))
            return None
        return matches[0], reusable
