from __future__ import annotations

from typing import Any, Dict, List, Optional


class HubBackupError(Exception):
    """Base exception for backup/restore orchestration errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(HubBackupError):
    """Raised when a desired-state spec cannot be acted upon until it is edited."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class NotFoundError(HubBackupError):
    """Raised when a requested or candidate backup does not exist."""


class TransientError(HubBackupError):
    """Raised when a read or write against the cluster API fails."""


class CollisionError(HubBackupError):
    """Raised when another hub owns the latest backups at the storage location."""
