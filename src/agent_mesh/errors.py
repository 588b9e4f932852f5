"""Error types surfaced by mesh operations."""

from __future__ import annotations

from typing import Any, Optional

EMPTY_MESSAGE = "EMPTY_MESSAGE"
SELF_TARGET = "SELF_TARGET"
TARGET_NOT_ACTIVE = "TARGET_NOT_ACTIVE"
NO_ACTIVE_RECIPIENTS = "NO_ACTIVE_RECIPIENTS"
MISSING_PATH = "MISSING_PATH"
INVALID_PATTERN = "INVALID_PATTERN"
INVALID_PARAMS = "INVALID_PARAMS"
TOO_MANY_TASKS = "TOO_MANY_TASKS"
MAX_DEPTH_REACHED = "MAX_DEPTH_REACHED"
ALREADY_RUNNING = "ALREADY_RUNNING"
DELIVERY_FAILED = "DELIVERY_FAILED"
REMOTE_CONTROL = "REMOTE_CONTROL"


class CoordinationError(Exception):
    """A local, synchronous rejection of a mesh operation.

    Ownership conflicts and transient lock failures are *not* raised; they come
    back as booleans from the registry. This type covers caller mistakes and
    preconditions the caller has to fix before retrying.
    """

    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


class RemoteControlError(CoordinationError):
    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__(REMOTE_CONTROL, message, recoverable=True, data=data)
