from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import os

from productive_resolve.api_client import DEFAULT_BASE_URL
from productive_resolve.reference_cache import DEFAULT_MAX_AGE_MS


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _flag(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def default_cache_dir() -> str:
    env = os.getenv("PRODUCTIVE_CACHE_DIR")
    if env:
        return env
    base = os.getenv("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return os.path.join(base, "productive-cli")


@dataclass(frozen=True)
class AppConfig:
    port: int
    organization_id: Optional[str]
    api_token: Optional[str]
    base_url: str
    cache_dir: str
    cache_enabled: bool
    stale_fraction: float
    reference_max_age_ms: int
    reference_resync_seconds: int
    filter_resolve_mode: str
    auth_tokens: list[str]
    api_keys: list[str]
    retry_max_attempts: int
    retry_base_delay_ms: int

    @property
    def auth_required(self) -> bool:
        """Gateway credentials are enforced once any bearer token or API key is configured."""
        return bool(self.auth_tokens or self.api_keys)

    @staticmethod
    def from_env() -> "AppConfig":
        mode = os.getenv("FILTER_RESOLVE_MODE", "lenient").strip().lower()
        if mode not in {"lenient", "strict"}:
            raise ValueError(f"FILTER_RESOLVE_MODE must be 'lenient' or 'strict', got {mode!r}")
        return AppConfig(
            port=int(os.getenv("PORT", "8000")),
            organization_id=os.getenv("PRODUCTIVE_ORG_ID") or None,
            api_token=os.getenv("PRODUCTIVE_API_TOKEN") or None,
            base_url=os.getenv("PRODUCTIVE_BASE_URL", DEFAULT_BASE_URL),
            cache_dir=default_cache_dir(),
            cache_enabled=_flag(os.getenv("PRODUCTIVE_CACHE"), True),
            stale_fraction=float(os.getenv("CACHE_STALE_FRACTION", "0.75")),
            reference_max_age_ms=int(os.getenv("REFERENCE_MAX_AGE_MS", str(DEFAULT_MAX_AGE_MS))),
            reference_resync_seconds=int(os.getenv("REFERENCE_RESYNC_SECONDS", "0")),
            filter_resolve_mode=mode,
            auth_tokens=_split_csv(os.getenv("GATEWAY_AUTH_TOKENS")),
            api_keys=_split_csv(os.getenv("GATEWAY_API_KEYS")),
            retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            retry_base_delay_ms=int(os.getenv("RETRY_BASE_DELAY_MS", "200")),
        )
