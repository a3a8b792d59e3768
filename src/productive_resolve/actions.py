from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from productive_resolve.api_client import ProductiveTransportError, ProductiveUpstreamError
from productive_resolve.errors import AmbiguousTypeError, NotFoundError
from productive_resolve.filters import FilterResolver
from productive_resolve.models import ResolveScope
from productive_resolve.security import AuthContext
from productive_resolve.sync import sync_if_stale, sync_reference_data
from productive_resolve.tenant import MissingOrganizationError, TenantPool


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionHTTPResponse:
    status_code: int
    body: dict[str, Any]


class ActionError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}


Handler = Callable[[dict[str, Any], AuthContext], Awaitable[dict[str, Any]]]


def _optional_str(args: dict[str, Any], name: str) -> str | None:
    value = args.get(name)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ActionError(status_code=400, code=f"invalid_{name}", message=f"{name} must be a non-empty string")
    return value.strip()


class ActionDispatcher:
    def __init__(self, *, tenants: TenantPool) -> None:
        self.tenants = tenants
        self._handlers: dict[str, Handler] = {
            "resolve": self._resolve,
            "resolve.filters": self._resolve_filters,
            "cache.status": self._cache_status,
            "cache.clear": self._cache_clear,
            "cache.sync": self._cache_sync,
            "cache.queue": self._cache_queue,
            "cache.cleanup": self._cache_cleanup,
        }

    async def dispatch(self, *, payload: dict[str, Any], auth: AuthContext) -> ActionHTTPResponse:
        request_id = payload.get("requestId")
        action = payload.get("action")
        args = payload.get("args") or {}

        if not isinstance(action, str) or not action:
            return self._error_response(
                request_id=request_id,
                action="",
                err=ActionError(status_code=400, code="invalid_action", message="Field 'action' must be a non-empty string"),
            )
        if not isinstance(args, dict):
            return self._error_response(
                request_id=request_id,
                action=action,
                err=ActionError(status_code=400, code="invalid_args", message="Field 'args' must be an object"),
            )

        handler = self._handlers.get(action)
        if not handler:
            return self._error_response(
                request_id=request_id,
                action=action,
                err=ActionError(status_code=400, code="unknown_action", message=f"Unknown action: {action}"),
            )

        try:
            result = await handler(args, auth)
            return ActionHTTPResponse(
                status_code=200,
                body={"requestId": request_id, "action": action, "ok": True, "result": result},
            )
        except ActionError as err:
            return self._error_response(request_id=request_id, action=action, err=err)
        except NotFoundError as err:
            return self._error_response(
                request_id=request_id,
                action=action,
                err=ActionError(status_code=404, code=err.code, message=err.message, details=err.to_dict()),
            )
        except AmbiguousTypeError as err:
            return self._error_response(
                request_id=request_id,
                action=action,
                err=ActionError(status_code=400, code=err.code, message=err.message, details=err.to_dict()),
            )
        except MissingOrganizationError as err:
            return self._error_response(
                request_id=request_id,
                action=action,
                err=ActionError(status_code=400, code="missing_organization_id", message=str(err)),
            )
        except ProductiveTransportError as err:
            return self._error_response(
                request_id=request_id,
                action=action,
                err=ActionError(
                    status_code=424,
                    code="upstream_unreachable",
                    message="Productive API unreachable",
                    details={"error": str(err)},
                ),
            )
        except ProductiveUpstreamError as err:
            status_code = 429 if err.status_code == 429 else 502
            code = "upstream_rate_limited" if err.status_code == 429 else "upstream_error"
            return self._error_response(
                request_id=request_id,
                action=action,
                err=ActionError(
                    status_code=status_code,
                    code=code,
                    message=err.detail or "Productive API returned an error",
                    details={"status": err.status_code, "body": err.body},
                ),
            )
        except Exception as err:
            logger.exception("action %s failed", action)
            return self._error_response(
                request_id=request_id,
                action=action,
                err=ActionError(status_code=500, code="internal_error", message=str(err)),
            )

    @staticmethod
    def _error_response(*, request_id: str | None, action: str, err: ActionError) -> ActionHTTPResponse:
        body: dict[str, Any] = {
            "requestId": request_id,
            "action": action,
            "ok": False,
            "error": {"code": err.code, "message": err.message, "details": err.details},
        }
        return ActionHTTPResponse(status_code=err.status_code, body=body)

    async def _resolve(self, args: dict[str, Any], _: AuthContext):
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ActionError(status_code=400, code="invalid_query", message="query must be a non-empty string")
        tenant = await self.tenants.get(_optional_str(args, "orgId"))
        matches = await tenant.resolver.resolve(
            query,
            args.get("type") or None,
            ResolveScope(project_id=_optional_str(args, "projectId")),
            first=args.get("first") is True,
        )
        return {"matches": [match.to_dict() for match in matches]}

    async def _resolve_filters(self, args: dict[str, Any], _: AuthContext):
        filters = args.get("filters")
        if not isinstance(filters, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in filters.items()
        ):
            raise ActionError(status_code=400, code="invalid_filters", message="filters must map strings to strings")
        tenant = await self.tenants.get(_optional_str(args, "orgId"))
        resolver = tenant.filters
        mode = args.get("mode")
        if mode and mode != resolver.mode:
            resolver = FilterResolver(tenant.resolver, mode=mode, type_mapping=resolver.type_mapping)
        project_id = _optional_str(args, "projectId")
        result = await resolver.resolve_filters(filters, ResolveScope(project_id=project_id) if project_id else None)
        return {
            "resolved": result.resolved,
            "metadata": {key: meta.to_dict() for key, meta in result.metadata.items()},
        }

    async def _cache_status(self, args: dict[str, Any], _: AuthContext):
        tenant = await self.tenants.get(_optional_str(args, "orgId"))
        query_stats = await tenant.query_cache.stats()
        reference_stats = await tenant.reference_cache.stats()
        return {
            "queryCache": {
                "entries": query_stats.entries,
                "sizeBytes": query_stats.size_bytes,
                "oldestAgeSeconds": query_stats.oldest_age_seconds,
            },
            "referenceCache": {k: v for k, v in reference_stats.items() if k != "db_size_bytes"},
            "refreshQueue": {"pendingJobs": await tenant.query_cache.refresh_queue_count()},
            "database": {"sizeBytes": reference_stats["db_size_bytes"], "location": tenant.db.path},
        }

    async def _cache_clear(self, args: dict[str, Any], _: AuthContext):
        tenant = await self.tenants.get(_optional_str(args, "orgId"))
        pattern = _optional_str(args, "pattern")
        if pattern:
            removed = await tenant.query_cache.invalidate(pattern)
            return {"pattern": pattern, "removed": removed}
        await tenant.reference_cache.clear()
        return {"pattern": None, "cleared": True}

    async def _cache_sync(self, args: dict[str, Any], _: AuthContext):
        tenant = await self.tenants.get(_optional_str(args, "orgId"))
        if args.get("onlyStale"):
            synced = await sync_if_stale(
                client=tenant.client,
                cache=tenant.reference_cache,
                max_age_ms=self.tenants.config.reference_max_age_ms,
            )
        else:
            synced = await sync_reference_data(client=tenant.client, cache=tenant.reference_cache)
        return {"synced": synced}

    async def _cache_queue(self, args: dict[str, Any], _: AuthContext):
        tenant = await self.tenants.get(_optional_str(args, "orgId"))
        if args.get("clear"):
            return {"cleared": await tenant.query_cache.clear_refresh_queue()}
        jobs = await tenant.query_cache.get_pending_refresh_jobs()
        return {
            "pendingJobs": len(jobs),
            "jobs": [
                {"cacheKey": job.cache_key, "endpoint": job.endpoint, "params": job.params, "queuedAt": job.queued_at}
                for job in jobs
            ],
        }

    async def _cache_cleanup(self, args: dict[str, Any], _: AuthContext):
        tenant = await self.tenants.get(_optional_str(args, "orgId"))
        return {"removed": await tenant.query_cache.cleanup()}
