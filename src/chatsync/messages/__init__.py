from __future__ import annotations

from .linking import BulkStatusResult, LinkError, MessageLinkAndStatusTracker, StatusError

__all__ = [
    "BulkStatusResult",
    "LinkError",
    "MessageLinkAndStatusTracker",
    "StatusError",
]
