from __future__ import annotations

from .delta import DeleteError, DeleteOutcome, DeltaSyncCoordinator, StuckDeletion, SyncError
from .orchestrator import SyncOrchestrator
from .tombstones import TombstoneSet

__all__ = [
    "DeleteError",
    "DeleteOutcome",
    "DeltaSyncCoordinator",
    "StuckDeletion",
    "SyncError",
    "SyncOrchestrator",
    "TombstoneSet",
]
