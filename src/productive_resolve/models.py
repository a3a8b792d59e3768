from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


ResourceType = Literal["person", "project", "company", "deal", "service"]
ReferenceKind = Literal["projects", "people", "services", "companies", "deals"]

RESOURCE_TYPES: tuple[ResourceType, ...] = ("person", "project", "company", "deal", "service")
REFERENCE_KINDS: tuple[ReferenceKind, ...] = ("projects", "people", "services", "companies", "deals")


@dataclass(frozen=True)
class ResolveScope:
    project_id: str | None = None


@dataclass(frozen=True)
class ResolveMatch:
    id: str
    type: ResourceType
    label: str
    query: str
    exact: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "query": self.query,
            "exact": self.exact,
        }


@dataclass(frozen=True)
class ResolvedFilterMetadata:
    input: str
    id: str
    label: str
    reusable: bool

    def to_dict(self) -> dict[str, Any]:
        return {"input": self.input, "id": self.id, "label": self.label, "reusable": self.reusable}


@dataclass
class ResolvedFilters:
    resolved: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, ResolvedFilterMetadata] = field(default_factory=dict)

    @property
    def did_resolve(self) -> bool:
        return bool(self.metadata)


@dataclass(frozen=True)
class CachedResponse:
    data: Any
    is_stale: bool
    endpoint: str
    params: dict[str, Any]


@dataclass(frozen=True)
class RefreshJob:
    cache_key: str
    endpoint: str
    params: dict[str, Any]
    queued_at: int


@dataclass(frozen=True)
class CacheStats:
    entries: int
    size_bytes: int
    oldest_age_seconds: int


@dataclass(frozen=True)
class ReferenceRow:
    """A reference-cache row: searchable columns plus the raw JSON:API record."""

    kind: ReferenceKind
    id: str
    columns: dict[str, Any]
    data: dict[str, Any]
    synced_at: int
