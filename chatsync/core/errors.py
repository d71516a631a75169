# chatsync/core/errors.py
"""
Error taxonomy for the chat client.

Every error is local to the operation that raised it. None of them leaves a
component unusable: a failed load can be retried, a failed send is rolled
back, a failed join still lets the room send over REST.
"""

from __future__ import annotations

from typing import List, Optional


class ChatSyncError(Exception):
    """Base exception for chat client errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ApiError(ChatSyncError):
    """Raised when a REST call fails.

    Attributes:
        status: HTTP status code, or None when the request never got a response.
        payload: Decoded error body, if the server sent one.
    """
    def __init__(self, message: str, status: Optional[int] = None, payload: Optional[dict] = None):
        self.status = status
        self.payload = payload or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"HTTP {self.status}: {self.message}"


class LoadError(ChatSyncError):
    """Raised when any of the room details, messages or members requests fails."""
    def __init__(self, room_id: str, errors: List[Exception]):
        self.room_id = room_id
        self.errors = errors
        details = "; ".join(str(e) for e in errors)
        super().__init__(f"Failed to load room {room_id}: {details}")


class SendError(ChatSyncError):
    """Raised when a message submission fails. The optimistic entry is already rolled back."""
    retryable = True

    def __init__(self, room_id: str, content: str, cause: Optional[Exception] = None):
        self.room_id = room_id
        self.content = content
        self.cause = cause
        reason = f": {cause}" if cause else ""
        super().__init__(f"Failed to send message to room {room_id}{reason}")


class SubscriptionError(ChatSyncError):
    """Raised when a join/leave signal could not be delivered on the real-time channel."""
    def __init__(self, room_id: str, action: str, message: str):
        self.room_id = room_id
        self.action = action
        super().__init__(f"{action} room {room_id} failed: {message}")


class TransportError(ChatSyncError):
    """Raised when the real-time connection cannot be opened or used."""


class EngineStateError(ChatSyncError):
    """Raised on an illegal state transition in the synchronization engine."""
