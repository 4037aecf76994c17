"""Error taxonomy for call signaling."""
from __future__ import annotations

from typing import Any


class CallError(Exception):
    """Base class for every error raised by the signaling core."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{super().__str__()} - {self.details}"
        return super().__str__()


class PermissionDenied(CallError):
    """Camera or microphone access was refused."""


class DeviceUnavailable(CallError):
    """No usable capture device could be opened."""


class StoreUnavailable(CallError):
    """The signaling store could not be reached."""


class RoomNotFound(CallError):
    def __init__(self, room_id: str) -> None:
        super().__init__("Room not found", {"room_id": room_id})
        self.room_id = room_id


class NoOffer(CallError):
    def __init__(self, room_id: str) -> None:
        super().__init__("Room has no offer yet", {"room_id": room_id})
        self.room_id = room_id


class AlreadyAnswered(CallError):
    def __init__(self, room_id: str) -> None:
        super().__init__("Room already has an answer", {"room_id": room_id})
        self.room_id = room_id


class MediaNotReady(CallError):
    """Local media must be acquired before starting or joining a call."""


class SignalingFailure(CallError):
    """Description or candidate exchange failed."""


class CallInProgress(CallError):
    """A call is already active on this coordinator."""


class SessionClosed(CallError):
    """The session has reached a terminal state."""
