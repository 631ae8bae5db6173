from __future__ import annotations

from dataclasses import dataclass, field

from .constants import (
    DEFAULT_API_URL,
    DEFAULT_BACKOFF_BASE_S,
    DEFAULT_BACKOFF_MAX_S,
    DEFAULT_DEBOUNCE_S,
    DEFAULT_FALLBACK_WINDOW_MS,
    DEFAULT_HEARTBEAT_INTERVAL_S,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_PERIODIC_SYNC_S,
    DEFAULT_REQUEST_TIMEOUT_S,
    DEFAULT_TOMBSTONE_MAX_SURVIVALS,
    DEFAULT_WS_URL,
)


@dataclass(slots=True)
class SyncConfig:
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    debounce_s: float = DEFAULT_DEBOUNCE_S
    # `None` disables the periodic background pass.
    periodic_sync_s: float | None = DEFAULT_PERIODIC_SYNC_S
    tombstone_max_survivals: int = DEFAULT_TOMBSTONE_MAX_SURVIVALS
    fallback_window_ms: int = DEFAULT_FALLBACK_WINDOW_MS


@dataclass(slots=True)
class ConnectionConfig:
    heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    backoff_base_s: float = DEFAULT_BACKOFF_BASE_S
    backoff_max_s: float = DEFAULT_BACKOFF_MAX_S


@dataclass(slots=True)
class EngineConfig:
    api_url: str = DEFAULT_API_URL
    ws_url: str = DEFAULT_WS_URL

    sync: SyncConfig = field(default_factory=SyncConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)

    headers: dict[str, str] = field(default_factory=dict)
