from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable

import aiosqlite
from fastapi import Body, Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from productive_resolve.actions import ActionDispatcher
from productive_resolve.config import AppConfig
from productive_resolve.registry import StoreRegistry
from productive_resolve.schemas import (
    KNOWN_ACTIONS,
    ActionRequest,
    ActionResponse,
    HealthResponse,
    ReadinessResponse,
    UnauthorizedResponse,
)
from productive_resolve.security import AuthContext, require_auth
from productive_resolve.sync import resync_loop
from productive_resolve.tenant import TenantPool


logger = logging.getLogger("productive_resolve")


@dataclass
class AppState:
    config: AppConfig
    registry: StoreRegistry
    tenants: TenantPool
    dispatcher: ActionDispatcher
    tasks: list[asyncio.Task]


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = AppConfig.from_env()
    registry = StoreRegistry(config.cache_dir)
    tenants = TenantPool(config=config, registry=registry)
    dispatcher = ActionDispatcher(tenants=tenants)

    tasks: list[asyncio.Task] = []
    app.state.state = AppState(
        config=config,
        registry=registry,
        tenants=tenants,
        dispatcher=dispatcher,
        tasks=tasks,
    )

    if config.reference_resync_seconds > 0 and config.organization_id and config.api_token and config.cache_enabled:
        tenant = await tenants.get()
        tasks.append(
            asyncio.create_task(
                resync_loop(
                    client=tenant.client,
                    cache=tenant.reference_cache,
                    max_age_ms=config.reference_max_age_ms,
                    seconds=config.reference_resync_seconds,
                )
            )
        )

    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except BaseException:
                pass
        await tenants.close()


app = FastAPI(
    title="Productive Resolve",
    version="0.1.0",
    description=(
        "# Productive Resolve API\n\n"
        "Turns human-friendly identifiers (emails, project numbers, deal numbers, names) into "
        "Productive.io resource ids, backed by a per-organization local cache.\n\n"
        "## Auth\n"
        "When `GATEWAY_AUTH_TOKENS` or `GATEWAY_API_KEYS` is set, `/v1/*` requires one of:\n\n"
        "- `Authorization: Bearer <token>`\n"
        "- `X-API-Key: <key>`\n\n"
        "## Endpoints\n"
        "- `GET /healthz` liveness\n"
        "- `GET /readyz` readiness (organization id + API token + cache store)\n"
        "- `POST /v1/actions` single action endpoint\n\n"
        "All action requests use the same envelope:\n\n"
        "```json\n"
        "{ \"requestId\": \"optional\", \"action\": \"...\", \"args\": { } }\n"
        "```\n"
    ),
    lifespan=lifespan,
)


def _json_safe(value):
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", "ignore")
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    return str(value)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = {"errors": _json_safe(exc.errors())}
    code = "invalid_request"
    message = "Request validation failed"
    for err in exc.errors():
        if err.get("type") == "json_invalid":
            code = "invalid_json"
            message = "Request body must be valid JSON"
            details = {"error": str(err.get("msg", "invalid json"))}
            break
        if err.get("type") == "model_attributes_type" and err.get("loc") == ("body",):
            code = "invalid_json"
            message = "Request body must be a JSON object"
            details = {"error": str(err.get("msg", "invalid body"))}
            break

    body_action = ""
    body_request_id = None
    if code != "invalid_json":
        try:
            raw = await request.body()
            parsed = json.loads(raw) if raw else None
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            if isinstance(parsed.get("action"), str):
                body_action = parsed["action"]
            if isinstance(parsed.get("requestId"), str):
                body_request_id = parsed["requestId"]

    if code == "invalid_request":
        if body_action and body_action not in KNOWN_ACTIONS:
            code = "unknown_action"
            message = f"Unknown action: {body_action}"
        else:
            for err in exc.errors():
                loc = err.get("loc")
                if loc == ("body", "action"):
                    code = "invalid_action"
                    message = "Field 'action' must be a valid action string"
                    break
                if isinstance(loc, tuple) and len(loc) >= 3 and loc[0] == "body" and "args" in loc:
                    code = "invalid_args"
                    message = "Field 'args' must match the action schema"
                    break

    payload = {
        "requestId": body_request_id,
        "action": body_action,
        "ok": False,
        "error": {"code": code, "message": message, "details": details},
    }
    return JSONResponse(payload, status_code=status.HTTP_400_BAD_REQUEST)


@app.middleware("http")
async def access_log(request: Request, call_next: Callable[[Request], Response]):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    request_id = request.headers.get("x-request-id", "")
    logger.info(
        "%s %s -> %s (%.1fms) rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
        request_id,
    )
    return response


@app.get(
    "/healthz",
    summary="Liveness check",
    description="Returns `ok=true` if the process is alive.",
    response_model=HealthResponse,
    tags=["meta"],
)
async def healthz() -> HealthResponse:
    return {"ok": True}


@app.get(
    "/readyz",
    summary="Readiness check",
    description=(
        "Returns `ready=true` when an organization id and API token are configured and the "
        "organization's cache store opens.\n\n"
        "Not-ready reasons:\n"
        "- `missing_organization_id`\n"
        "- `missing_api_token`\n"
        "- `store_unavailable`\n"
    ),
    response_model=ReadinessResponse,
    tags=["meta"],
)
async def readyz() -> ReadinessResponse:
    state: AppState = app.state.state
    if not state.config.organization_id:
        return JSONResponse({"ready": False, "reason": "missing_organization_id"}, status_code=503)
    if not state.config.api_token:
        return JSONResponse({"ready": False, "reason": "missing_api_token"}, status_code=503)

    try:
        await state.registry.get(state.config.organization_id)
    except (OSError, ValueError, aiosqlite.Error) as exc:
        return JSONResponse(
            {"ready": False, "reason": "store_unavailable", "details": str(exc)},
            status_code=503,
        )
    return {"ready": True}


@app.post(
    "/v1/actions",
    summary="Single action endpoint",
    description=(
        "Execute one action.\n\n"
        "Supported actions:\n\n"
        "- `resolve`: resolve one identifier.\n"
        "  - args: `{ \"query\": \"jane@example.com\", \"type\": \"person\" }`\n"
        "  - `404` `not_found` when nothing matches; `400` `ambiguous_type` when free text has no type.\n\n"
        "- `resolve.filters`: resolve every known `*_id` key of a filter map.\n"
        "  - args: `{ \"filters\": { \"project_id\": \"PRJ-123\" }, \"mode\": \"strict\" }`\n\n"
        "- `cache.status`: query cache, reference cache and refresh queue statistics.\n\n"
        "- `cache.clear`: `{ \"pattern\": \"projects\" }` invalidates matching query-cache entries; "
        "omit `pattern` to wipe the whole store.\n\n"
        "- `cache.sync`: mirror people/projects/services/companies/deals; `onlyStale` skips fresh kinds.\n\n"
        "- `cache.queue`: list pending refresh jobs, or drop them with `clear`.\n\n"
        "- `cache.cleanup`: delete expired query-cache entries.\n"
    ),
    response_model=ActionResponse,
    responses={
        400: {"description": "Bad request / invalid JSON / unknown action / invalid args / ambiguous type."},
        401: {
            "description": "Unauthorized (missing/invalid gateway auth).",
            "model": UnauthorizedResponse,
        },
        404: {"description": "No resource matches the query."},
        424: {"description": "Failed dependency (Productive API unreachable)."},
        429: {"description": "Rate limited by the Productive API."},
        502: {"description": "Bad gateway (Productive API returned an error)."},
        500: {"description": "Internal server error."},
    },
    tags=["actions"],
)
async def actions(
    request: Request,
    payload: ActionRequest = Body(
        ...,
        openapi_examples={
            "resolve_email": {
                "summary": "Resolve a person by email",
                "value": {"action": "resolve", "args": {"query": "jane@example.com"}},
            },
            "resolve_filters": {
                "summary": "Resolve a filter map",
                "value": {
                    "action": "resolve.filters",
                    "args": {"filters": {"assignee_id": "jane@example.com", "project_id": "PRJ-123"}},
                },
            },
            "cache_status": {
                "summary": "Inspect the cache",
                "value": {"action": "cache.status", "args": {}},
            },
        },
    ),
    auth: AuthContext = Depends(require_auth),
) -> ActionResponse:
    # `ActionRequest` is a discriminated union; this is one concrete model at runtime.
    payload_dict = payload.model_dump()

    state: AppState = app.state.state
    response = await state.dispatcher.dispatch(payload=payload_dict, auth=auth)
    return JSONResponse(response.body, status_code=response.status_code)
