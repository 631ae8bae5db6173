from __future__ import annotations

DEFAULT_API_URL = "https://dev.v1.terracrypt.cc/api/v1"
DEFAULT_WS_URL = "wss://dev.v1.terracrypt.cc/api/v1/ws"
USER_AGENT = "chatsync/0.1"

# Remote calls are bounded; a timeout counts as "offline", not as a failure.
DEFAULT_REQUEST_TIMEOUT_S = 15.0

# Rapid repeated sync requests within this window collapse into one run.
DEFAULT_DEBOUNCE_S = 0.3
DEFAULT_PERIODIC_SYNC_S = 30.0

# Number of fetches a tombstone may survive (id still on the server) before
# the remote delete is considered stuck.
DEFAULT_TOMBSTONE_MAX_SURVIVALS = 3

DEFAULT_FALLBACK_WINDOW_MS = 2000

DEFAULT_HEARTBEAT_INTERVAL_S = 30.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_S = 1.0
DEFAULT_BACKOFF_MAX_S = 30.0

# Change events emitted to UI subscribers.
EVENT_ENTITY_UPSERTED = "entity-upserted"
EVENT_ENTITY_REMOVED = "entity-removed"
EVENT_MESSAGE_STATUS_CHANGED = "message-status-changed"
EVENT_MESSAGE_RECEIVED = "message-received"
EVENT_CONNECTION_CHANGED = "connection-changed"
EVENT_SYNC_PROBLEM = "sync-problem"
