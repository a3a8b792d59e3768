from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

import httpx

from productive_resolve.api_client import ProductiveClient
from productive_resolve.config import AppConfig
from productive_resolve.db import Database, now_ms
from productive_resolve.filters import FilterResolver
from productive_resolve.query_cache import QueryCache
from productive_resolve.reference_cache import ReferenceCache
from productive_resolve.registry import StoreRegistry
from productive_resolve.resolver import ResourceResolver


class MissingOrganizationError(Exception):
    pass


@dataclass
class Tenant:
    org_id: str
    db: Database
    query_cache: QueryCache
    reference_cache: ReferenceCache
    client: ProductiveClient
    resolver: ResourceResolver
    filters: FilterResolver


class TenantPool:
    """Wires the per-organization cache, API client and resolvers on first use."""

    def __init__(
        self,
        *,
        config: AppConfig,
        registry: StoreRegistry,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config
        self.registry = registry
        self._transport = transport
        self._clock = clock
        self._tenants: dict[str, Tenant] = {}
        self._lock = asyncio.Lock()

    async def get(self, org_id: str | None = None) -> Tenant:
        org_id = org_id or self.config.organization_id
        if not org_id:
            raise MissingOrganizationError("Organization id not configured (PRODUCTIVE_ORG_ID or args.orgId)")
        async with self._lock:
            tenant = self._tenants.get(org_id)
            if tenant is not None:
                return tenant
            db = await self.registry.get(org_id)
            query_cache = QueryCache(db, stale_fraction=self.config.stale_fraction, clock=self._clock)
            reference_cache = ReferenceCache(db, clock=self._clock)
            client = ProductiveClient(
                api_token=self.config.api_token,
                organization_id=org_id,
                base_url=self.config.base_url,
                cache=query_cache if self.config.cache_enabled else None,
                max_attempts=self.config.retry_max_attempts,
                base_delay_ms=self.config.retry_base_delay_ms,
                transport=self._transport,
            )
            resolver = ResourceResolver(
                client,
                reference_cache if self.config.cache_enabled else None,
                max_age_ms=self.config.reference_max_age_ms,
            )
            tenant = Tenant(
                org_id=org_id,
                db=db,
                query_cache=query_cache,
                reference_cache=reference_cache,
                client=client,
                resolver=resolver,
                filters=FilterResolver(resolver, mode=self.config.filter_resolve_mode),
            )
            self._tenants[org_id] = tenant
            return tenant

    async def close(self) -> None:
        async with self._lock:
            tenants = list(self._tenants.values())
            self._tenants.clear()
        for tenant in tenants:
            await tenant.client.close()
        await self.registry.close_all()
