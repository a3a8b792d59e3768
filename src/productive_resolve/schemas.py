from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


ResourceTypeName = Literal["person", "project", "company", "deal", "service"]


class HealthResponse(BaseModel):
    ok: bool = Field(..., description="Process is alive.")


class ReadinessResponse(BaseModel):
    ready: bool = Field(..., description="True when credentials are configured and the tenant store opens.")
    reason: str | None = Field(
        default=None,
        description="When not ready, a short machine-readable reason (e.g. missing_organization_id).",
    )


class _BaseActionRequest(BaseModel):
    requestId: str | None = Field(
        default=None,
        description="Optional client-provided id used for correlating logs and responses.",
        examples=["req-123"],
    )


class _TenantArgs(BaseModel):
    orgId: str | None = Field(
        default=None,
        description="Organization id; defaults to the gateway's configured organization.",
        examples=["12345"],
    )


class ResolveArgs(_TenantArgs):
    query: str = Field(
        ...,
        min_length=1,
        description="Email, project number (PRJ-123), deal number (D-45), name, or numeric id.",
        examples=["jane@example.com", "PRJ-123", "Website Redesign"],
    )
    type: ResourceTypeName | None = Field(
        default=None,
        description="Resource type; required when the query is free text.",
    )
    projectId: str | None = Field(default=None, description="Project scope for service lookups.")
    first: bool = Field(default=False, description="Return only the best match.")


class ResolveRequest(_BaseActionRequest):
    action: Literal["resolve"] = Field("resolve", description="Resolve one identifier to matching resources.")
    args: ResolveArgs


class ResolveFiltersArgs(_TenantArgs):
    filters: dict[str, str] = Field(
        ...,
        description="Filter map; values of known *_id keys may be human-friendly identifiers.",
        examples=[{"assignee_id": "jane@example.com", "project_id": "PRJ-123"}],
    )
    projectId: str | None = Field(default=None, description="Project scope for service_id values.")
    mode: Literal["lenient", "strict"] | None = Field(
        default=None,
        description="Override the configured resolve mode for this call.",
    )


class ResolveFiltersRequest(_BaseActionRequest):
    action: Literal["resolve.filters"] = Field("resolve.filters", description="Resolve every known key of a filter map.")
    args: ResolveFiltersArgs


class CacheStatusRequest(_BaseActionRequest):
    action: Literal["cache.status"] = Field("cache.status", description="Query/reference cache statistics.")
    args: _TenantArgs = Field(default_factory=_TenantArgs)


class CacheClearArgs(_TenantArgs):
    pattern: str | None = Field(
        default=None,
        description="Only drop query-cache entries whose key contains this text; omit to wipe everything.",
        examples=["projects"],
    )


class CacheClearRequest(_BaseActionRequest):
    action: Literal["cache.clear"] = Field("cache.clear", description="Invalidate cached data.")
    args: CacheClearArgs = Field(default_factory=CacheClearArgs)


class CacheSyncArgs(_TenantArgs):
    onlyStale: bool = Field(default=False, description="Only resync kinds older than the configured max age.")


class CacheSyncRequest(_BaseActionRequest):
    action: Literal["cache.sync"] = Field("cache.sync", description="Mirror reference data into the local cache.")
    args: CacheSyncArgs = Field(default_factory=CacheSyncArgs)


class CacheQueueArgs(_TenantArgs):
    clear: bool = Field(default=False, description="Drop every pending refresh job.")


class CacheQueueRequest(_BaseActionRequest):
    action: Literal["cache.queue"] = Field("cache.queue", description="List or clear pending refresh jobs.")
    args: CacheQueueArgs = Field(default_factory=CacheQueueArgs)


class CacheCleanupRequest(_BaseActionRequest):
    action: Literal["cache.cleanup"] = Field("cache.cleanup", description="Delete expired query-cache entries.")
    args: _TenantArgs = Field(default_factory=_TenantArgs)


ActionRequest = Annotated[
    Union[
        ResolveRequest,
        ResolveFiltersRequest,
        CacheStatusRequest,
        CacheClearRequest,
        CacheSyncRequest,
        CacheQueueRequest,
        CacheCleanupRequest,
    ],
    Field(discriminator="action"),
]

KNOWN_ACTIONS = frozenset(
    {"resolve", "resolve.filters", "cache.status", "cache.clear", "cache.sync", "cache.queue", "cache.cleanup"}
)


class ActionError(BaseModel):
    code: str = Field(..., description="Machine-readable error code.")
    message: str = Field(..., description="Human-readable error message.")
    details: dict[str, Any] = Field(default_factory=dict, description="Structured extra error details.")


class ActionSuccessResponse(BaseModel):
    requestId: str | None = Field(default=None, description="Echoed from the request (if provided).")
    action: str
    ok: Literal[True] = True
    result: Any


class ActionFailureResponse(BaseModel):
    requestId: str | None = Field(default=None, description="Echoed from the request (if provided).")
    action: str = Field(..., description="Echoed action name.")
    ok: Literal[False] = False
    error: ActionError


ActionResponse = ActionSuccessResponse | ActionFailureResponse


class UnauthorizedResponse(BaseModel):
    detail: dict[str, Any] = Field(..., examples=[{"error": "unauthorized"}])
