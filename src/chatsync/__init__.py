"""
chatsync: an asyncio-first state reconciliation engine for chat clients.

Keeps a local cache of chats, friends and messages consistent with a remote
chat service: optimistic sends linked to server acknowledgements,
forward-only delivery receipts, tombstoned deletes that survive racing
fetches, and a reconnecting realtime channel that triggers catch-up syncs.
"""

from __future__ import annotations

from .client import ChatSyncEngine
from .exceptions import ChatsyncError
from .models import Chat, ConnectionState, EntityKind, Friend, MessageRecord, MessageStatus
from .sync_config import ConnectionConfig, EngineConfig, SyncConfig

__all__ = [
    "Chat",
    "ChatSyncEngine",
    "ChatsyncError",
    "ConnectionConfig",
    "ConnectionState",
    "EngineConfig",
    "EntityKind",
    "Friend",
    "MessageRecord",
    "MessageStatus",
    "SyncConfig",
]

__version__ = "0.1.0"
