from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class VersionConflict(Exception):
    """Raised when an optimistic save finds a newer stored version."""

    def __init__(
        self, conversation_id: str, expected_version: int, actual_version: Optional[int]
    ):
        super().__init__(
            f"conversation {conversation_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.conversation_id = conversation_id
        self.expected_version = expected_version
        self.actual_version = actual_version


__all__ = ["ConstraintViolation", "VersionConflict"]
