from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer


@dataclass(frozen=True)
class AuthContext:
    credential: str
    scheme: str  # "bearer" | "api_key" | "open"


def _is_allowed(value: str, allowed: list[str]) -> bool:
    return any(secrets.compare_digest(value, item) for item in allowed)


_bearer = HTTPBearer(auto_error=False)
_api_key = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_auth(
    request: Request,
    bearer: HTTPAuthorizationCredentials | None = Depends(_bearer),
    api_key: str | None = Depends(_api_key),
) -> AuthContext:
    """
    Authenticates one `/v1/actions` call.

    Whether credentials are enforced is decided by `AppConfig.auth_required`; an
    unconfigured gateway (localhost use) admits every caller with scheme `open`.
    """
    config = request.app.state.state.config
    if not config.auth_required:
        return AuthContext(credential="", scheme="open")

    if bearer and bearer.scheme.lower() == "bearer":
        token = bearer.credentials.strip()
        if token and _is_allowed(token, config.auth_tokens):
            return AuthContext(credential=token, scheme="bearer")

    if api_key and _is_allowed(api_key, config.api_keys):
        return AuthContext(credential=api_key, scheme="api_key")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "unauthorized"},
    )
