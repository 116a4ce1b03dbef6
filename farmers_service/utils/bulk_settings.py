"""Bulk pipeline settings sourced from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Literal, Optional


BulkSettingKey = Literal[
    "max_concurrency",
    "chunk_size",
    "max_records",
    "max_sync_records",
    "max_attempts",
]


@dataclass(frozen=True)
class IntSettingDefinition:
    env_var: str
    default: int
    minimum: int = 1


@dataclass(frozen=True)
class BulkSettings:
    max_concurrency: int
    chunk_size: int
    max_records: int
    max_sync_records: int
    max_attempts: int
    retry_backoff_seconds: float
    record_timeout_seconds: float
    status_url_prefix: str
    # how long a claim on an active operation stays valid without renewal
    lease_seconds: float = 60.0
    cancel_poll_seconds: float = 1.0


_INT_SETTING_DEFINITIONS: Dict[BulkSettingKey, IntSettingDefinition] = {
    "max_concurrency": IntSettingDefinition("BULK_MAX_CONCURRENCY", 5),
    "chunk_size": IntSettingDefinition("BULK_CHUNK_SIZE", 100),
    "max_records": IntSettingDefinition("BULK_MAX_RECORDS", 10000),
    "max_sync_records": IntSettingDefinition("BULK_MAX_SYNC_RECORDS", 100),
    "max_attempts": IntSettingDefinition("BULK_MAX_ATTEMPTS", 3),
}


def _normalize_int(value: Optional[str], default: int, minimum: int = 1) -> int:
    """Return a positive integer from an environment-style value."""
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return max(parsed, minimum)


def _normalize_float(value: Optional[str], default: float, *, allow_zero: bool = True) -> float:
    if value is None:
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    if parsed < 0 or (parsed == 0 and not allow_zero):
        return default
    return parsed


@lru_cache(maxsize=None)
def get_bulk_settings() -> BulkSettings:
    """Return the cached bulk pipeline settings."""
    ints = {
        key: _normalize_int(os.getenv(definition.env_var), definition.default, definition.minimum)
        for key, definition in _INT_SETTING_DEFINITIONS.items()
    }
    return BulkSettings(
        retry_backoff_seconds=_normalize_float(os.getenv("BULK_RETRY_BACKOFF_SECONDS"), 0.5),
        record_timeout_seconds=_normalize_float(
            os.getenv("BULK_RECORD_TIMEOUT_SECONDS"), 30.0, allow_zero=False
        ),
        status_url_prefix=os.getenv("BULK_STATUS_URL_PREFIX", "/bulk/operations").rstrip("/"),
        lease_seconds=_normalize_float(os.getenv("BULK_LEASE_SECONDS"), 60.0, allow_zero=False),
        cancel_poll_seconds=_normalize_float(os.getenv("BULK_CANCEL_POLL_SECONDS"), 1.0),
        **ints,
    )


@dataclass(frozen=True)
class CollaboratorSettings:
    aaa_base_url: str
    aaa_token: Optional[str]
    farmer_base_url: str
    farmer_token: Optional[str]
    timeout_seconds: float


@lru_cache(maxsize=None)
def get_collaborator_settings() -> CollaboratorSettings:
    """Endpoints of the authorization and farmer collaborators."""
    return CollaboratorSettings(
        aaa_base_url=os.getenv("AAA_SERVICE_URL", "http://localhost:8081").rstrip("/"),
        aaa_token=os.getenv("AAA_SERVICE_TOKEN") or None,
        farmer_base_url=os.getenv("FARMER_SERVICE_URL", "http://localhost:8000").rstrip("/"),
        farmer_token=os.getenv("FARMER_SERVICE_TOKEN") or None,
        timeout_seconds=_normalize_float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS"), 10.0, allow_zero=False),
    )


def refresh_settings_cache() -> None:
    """Invalidate cached settings (useful for tests)."""
    get_bulk_settings.cache_clear()
    get_collaborator_settings.cache_clear()
