from __future__ import annotations


class ChatsyncError(Exception):
    """Base error for the chatsync library."""


class InvalidArgumentError(ChatsyncError, ValueError):
    """A caller passed malformed or missing correlation data."""


class TransportError(ChatsyncError):
    """Realtime channel or network-level failure (treated as offline)."""


class FrameDecodeError(ChatsyncError):
    """An inbound frame could not be classified or validated."""


class RemoteApiError(ChatsyncError):
    """
    The remote API answered with a non-success status.

    `status` carries the HTTP-style status code when one is known.
    """

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class PermissionDeniedError(RemoteApiError):
    """The remote API refused the action (HTTP 403)."""

    def __init__(self, message: str = "permission denied", *, body: str | None = None) -> None:
        super().__init__(message, status=403, body=body)


class SendRejectedError(ChatsyncError):
    """The server rejected an outbound chat message."""

    def __init__(self, *, code: str, client_message_id: str | None = None) -> None:
        super().__init__(f"message send rejected (error={code})")
        self.code = code
        self.client_message_id = client_message_id
